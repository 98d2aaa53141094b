"""Tests for pod naming conventions."""
from __future__ import annotations

import pytest

from kamino.errors import PodValidationError
from kamino.naming import (
    clone_name,
    is_pod_owner,
    owner_pattern,
    parse_port_group_number,
    pod_id,
    port_group_name,
    port_group_pattern,
    router_name,
)


class TestPodId:
    def test_format(self):
        assert pod_id(1042, "web", "alice") == "1042_web_alice"

    @pytest.mark.parametrize("number,pod_name,username", [
        (1000, "web", "alice"),
        (2254, "ctf-finals", "bob.smith"),
        (1001, "a", "x"),
        (1003, "web", "john_doe"),
    ])
    def test_round_trip(self, number, pod_name, username):
        identifier = pod_id(number, pod_name, username)
        assert parse_port_group_number(identifier) == number
        assert is_pod_owner(identifier, username)

    def test_owner_is_case_insensitive(self):
        assert is_pod_owner("1000_web_alice", "ALICE")

    @pytest.mark.parametrize("identifier,username", [
        ("1000_web_alice", "bob"),
        ("1000_web_john_doe", "doe"),
        ("1000_web_john_doe", "john"),
        ("1000_web_alice", "web_alice"),
        ("1000_web_alice", ""),
        ("web_alice", "alice"),
    ])
    def test_not_owner(self, identifier, username):
        assert not is_pod_owner(identifier, username)

    def test_non_numeric_prefix_rejected(self):
        with pytest.raises(PodValidationError):
            parse_port_group_number("web_alice")

    def test_owner_pattern(self):
        assert owner_pattern("alice") == "*_alice"


class TestResourceNames:
    def test_port_group_name(self):
        assert port_group_name(1001, "KaminoNetwork") == "1001_KaminoNetwork"
        assert port_group_pattern("KaminoNetwork") == "*_KaminoNetwork"

    def test_clone_name(self):
        assert clone_name(1001, "web-server") == "1001-web-server"

    def test_router_name(self):
        assert router_name("web", natted=True) == "web-Natted-PodRouter"
        assert router_name("web", natted=False) == "web-PodRouter"

"""Async handle over a single virtual machine.

Wraps the blocking Platform VM primitives in asyncio.to_thread so the
provisioner can fan out per-VM work without blocking the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time

from kamino.config import settings
from kamino.errors import GuestAuthenticationError, GuestTimeoutError, PodValidationError
from kamino.models import ROUTER_MARKER, ObjectRef, VMDescriptor
from kamino.vsphere.platform import Platform

logger = logging.getLogger(__name__)

WAN_ADAPTER = "Network adapter 1"
LAN_ADAPTER = "Network adapter 2"


class VMHandle:
    """Power, snapshot, clone and guest operations on one VM."""

    def __init__(
        self,
        platform: Platform,
        ref: ObjectRef,
        *,
        is_router: bool | None = None,
        username: str = "",
        password: str = "",
    ):
        self.platform = platform
        self.ref = ref
        self.is_router = ROUTER_MARKER in ref.name if is_router is None else is_router
        self.username = username
        self.password = password

    @classmethod
    def from_descriptor(cls, platform: Platform, vm: VMDescriptor) -> VMHandle:
        return cls(
            platform,
            vm.ref,
            is_router=vm.is_router,
            username=vm.username,
            password=vm.password,
        )

    @property
    def name(self) -> str:
        return self.ref.name

    def __repr__(self) -> str:
        return f"VMHandle(name={self.name!r}, is_router={self.is_router})"

    async def power_on(self) -> None:
        await asyncio.to_thread(self.platform.power_on, self.ref)
        logger.debug(f"Powered on {self.name}")

    async def power_off(self) -> None:
        await asyncio.to_thread(self.platform.power_off, self.ref)
        logger.debug(f"Powered off {self.name}")

    async def create_snapshot(self, name: str) -> None:
        await asyncio.to_thread(self.platform.create_snapshot, self.ref, name)
        logger.debug(f"Created snapshot {name} on {self.name}")

    async def remove_snapshot(self, name: str) -> None:
        await asyncio.to_thread(self.platform.remove_snapshot, self.ref, name)

    async def has_snapshot(self, name: str) -> bool:
        return await asyncio.to_thread(self.platform.has_snapshot, self.ref, name)

    async def revert_snapshot(self, name: str) -> None:
        await asyncio.to_thread(self.platform.revert_snapshot, self.ref, name)
        logger.debug(f"Reverted {self.name} to {name}")

    async def clone(
        self,
        folder: ObjectRef,
        name: str,
        pool: ObjectRef,
        *,
        snapshot: str | None = None,
        network: ObjectRef | None = None,
    ) -> VMHandle:
        """Clone this VM; non-router clones get ``network`` on adapter 1."""
        if self.is_router:
            network = None
        ref = await asyncio.to_thread(
            self.platform.clone_vm,
            self.ref,
            folder,
            name,
            pool,
            snapshot=snapshot,
            network=network,
        )
        logger.info(f"Cloned {self.name} to {name}")
        return VMHandle(self.platform, ref, is_router=self.is_router)

    async def configure_router_networks(self, wan: ObjectRef, lan: ObjectRef) -> None:
        """Attach adapter 1 to the WAN and adapter 2 to the pod network."""
        if not self.is_router:
            raise PodValidationError(f"Cannot configure router networks for non-router {self.name}")
        await asyncio.to_thread(
            self.platform.connect_adapters,
            self.ref,
            {WAN_ADAPTER: wan, LAN_ADAPTER: lan},
        )
        logger.info(f"Router {self.name} attached to {wan.name} (WAN) and {lan.name} (LAN)")

    async def run_program(
        self,
        program_path: str,
        arguments: str,
        username: str,
        password: str,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        auth_retries: int | None = None,
        auth_backoff: float | None = None,
    ) -> int:
        """Run a program in the guest once guest tools are up.

        Polls guest tools every ``poll_interval`` seconds. Authentication
        failures (tools up but guest services not ready) are retried up to
        ``auth_retries`` times with ``auth_backoff`` seconds between
        attempts. The whole wait is bounded by ``timeout``.

        Returns:
            pid of the started program

        Raises:
            GuestTimeoutError: guest never became ready within ``timeout``,
                or kept rejecting logins after the retries ran out
        """
        timeout = settings.guest_ready_timeout if timeout is None else timeout
        poll_interval = settings.guest_poll_interval if poll_interval is None else poll_interval
        auth_retries = settings.guest_auth_retries if auth_retries is None else auth_retries
        auth_backoff = settings.guest_auth_backoff if auth_backoff is None else auth_backoff

        deadline = time.monotonic() + timeout
        retries = 0

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise GuestTimeoutError(f"Timeout waiting for {self.name} to be ready")
            await asyncio.sleep(min(poll_interval, remaining))

            if time.monotonic() >= deadline:
                raise GuestTimeoutError(f"Timeout waiting for {self.name} to be ready")

            running = await asyncio.to_thread(self.platform.guest_tools_running, self.ref)
            if not running:
                continue

            try:
                pid = await asyncio.to_thread(
                    self.platform.start_program,
                    self.ref,
                    username,
                    password,
                    program_path,
                    arguments,
                )
            except GuestAuthenticationError as e:
                if retries >= auth_retries:
                    raise GuestTimeoutError(
                        f"{self.name} still rejecting guest logins after {retries} retries"
                    ) from e
                retries += 1
                logger.warning(
                    f"Guest auth on {self.name} failed (attempt {retries}/{auth_retries}), "
                    f"retrying in {auth_backoff:.0f}s: {e}"
                )
                if time.monotonic() + auth_backoff >= deadline:
                    raise GuestTimeoutError(f"Timeout waiting for {self.name} to be ready") from e
                await asyncio.sleep(auth_backoff)
                continue

            logger.info(f"Started {program_path} on {self.name} (pid {pid})")
            return pid

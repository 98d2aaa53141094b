"""Centralized naming conventions for pod resources.

A pod identifier is ``<portGroupNumber>_<podName>_<username>`` and is used
as both the resource pool name and the VM folder name. All components that
build or parse these names MUST go through this module.
"""

from kamino.errors import PodValidationError

POD_ID_SEPARATOR = "_"
CLONE_SEPARATOR = "-"


def pod_id(number: int, pod_name: str, username: str) -> str:
    """Build a pod identifier.

    Format: {number}_{pod_name}_{username}
    """
    return POD_ID_SEPARATOR.join([str(number), pod_name, username])


def parse_port_group_number(identifier: str) -> int:
    """Recover the port group number from a pod identifier (first token)."""
    token = identifier.split(POD_ID_SEPARATOR, 1)[0]
    try:
        return int(token)
    except ValueError:
        raise PodValidationError(
            f"Pod id '{identifier}' does not start with a port group number"
        ) from None


def is_pod_owner(identifier: str, username: str) -> bool:
    """Whether ``username`` owns the pod (case-insensitive).

    Pod names never contain the separator, so everything after the second
    one is the owner even when the username itself contains it.
    """
    parts = identifier.split(POD_ID_SEPARATOR, 2)
    if len(parts) != 3 or not parts[0].isdigit() or not parts[1]:
        return False
    return bool(username) and parts[2].lower() == username.lower()


def owner_pattern(username: str) -> str:
    """Glob matching every pod resource pool of a user."""
    return f"*{POD_ID_SEPARATOR}{username}"


def port_group_name(number: int, suffix: str) -> str:
    """Port group name for a pod network.

    Format: {number}_{suffix}
    """
    return f"{number}{POD_ID_SEPARATOR}{suffix}"


def port_group_pattern(suffix: str) -> str:
    return f"*{POD_ID_SEPARATOR}{suffix}"


def clone_name(number: int, vm_name: str) -> str:
    """Name of a VM clone inside a pod.

    Format: {number}-{vm_name}
    """
    return f"{number}{CLONE_SEPARATOR}{vm_name}"


def router_name(base: str, natted: bool) -> str:
    """Name of a freshly cloned router VM."""
    suffix = "Natted-PodRouter" if natted else "PodRouter"
    return f"{base}{CLONE_SEPARATOR}{suffix}"

"""vSphere platform access for Kamino."""

from kamino.vsphere.platform import Platform
from kamino.vsphere.vm import VMHandle

__all__ = [
    "Platform",
    "VMHandle",
]

"""Kamino - lab pod provisioning on vSphere."""

__version__ = "0.3.0"

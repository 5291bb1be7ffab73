"""Connectivity test topology provisioning and validation for Cilium clusters."""

__version__ = "0.1.0"

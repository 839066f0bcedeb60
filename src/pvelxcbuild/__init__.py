"""pvelxcbuild — build LXC container templates on Proxmox VE."""

__version__ = "0.1.0"

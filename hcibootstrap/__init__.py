"""hci-bootstrap: temporary PXE bootstrap node for bare-metal Kubernetes clusters."""

__version__ = "0.1.0"

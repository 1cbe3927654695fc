"""Deploy uploaded projects into Firecracker micro-VMs over HTTP."""

__version__ = "0.1.0"
__all__ = ["__version__"]
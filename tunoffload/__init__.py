"""virtio-net GSO splitting and GRO coalescing of IP packets for TUN devices."""

__version__ = "0.1.0"
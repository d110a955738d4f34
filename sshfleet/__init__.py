"""sshfleet — discover, monitor, and administer SSH hosts on the local network.

Subpackages:
    sshfleet.discovery  — TCP probe, /24 subnet scan, mDNS aggregation
    sshfleet.ssh        — command execution backends, host key trust, sudo retry
"""

__version__ = "0.3.0"

"""Clients for the external systems the control plane drives."""
from src.services.cloudflare import CloudflareDns, DnsProviderError, DnsRecord
from src.services.hetzner import HetznerProvider, Machine, ProviderError
from src.services.host_keys import HostKeyMismatchError, HostKeyService
from src.services.remote_shell import CommandResult, RemoteCommandError, RemoteHostChannel

__all__ = [
    "CloudflareDns",
    "DnsProviderError",
    "DnsRecord",
    "HetznerProvider",
    "Machine",
    "ProviderError",
    "HostKeyMismatchError",
    "HostKeyService",
    "CommandResult",
    "RemoteCommandError",
    "RemoteHostChannel",
]

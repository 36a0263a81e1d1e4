"""HTTP clients for the identity service and the IPFS attachment store."""
from .identity import IdentityClient
from .ipfs import IpfsClient

__all__ = ['IdentityClient', 'IpfsClient']

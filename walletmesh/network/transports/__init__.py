"""
Concrete Transport implementations.
"""

from walletmesh.network.transports.http import HttpTransport

__all__ = ["HttpTransport"]

"""
Network layer: the broadcast primitive and its bindings.

Depends on: config, origin
"""

from walletmesh.network.channel import BroadcastChannel, ChannelTransport
from walletmesh.network.transport import Delivery, SendResult, Transport

__all__ = ["BroadcastChannel", "ChannelTransport", "Delivery", "SendResult", "Transport"]

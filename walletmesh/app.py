"""
Application composition root — the relay server entry point.

    python -m walletmesh.app        (or the `walletmesh-relay` script)

Depends on: config, network/relay
"""

import os
import sys

import uvicorn
from starlette.routing import Router

from walletmesh.config import (
    DEFAULT_REQUEST_TIMEOUT,
    HANDSHAKE_TIMEOUT,
    PROTOCOL_VERSION,
    RELAY_BUFFER_MAX,
    RELAY_ENTRY_TTL,
    RELAY_HOST,
    RELAY_PORT,
    RELAY_SUBSCRIBER_TTL,
    TRACE_DROPS,
)
from walletmesh.network.relay import RelayHub, create_relay_app


def create_app(hub: RelayHub = None) -> Router:
    """Create the relay ASGI app.

    Returns:
        The ASGI app (a Starlette Router).
    """
    return create_relay_app(hub if hub is not None else RelayHub())


def print_startup_banner(host: str, port: int) -> None:
    """Print startup banner to stderr."""
    print(f"[WalletMesh] Relay (protocol {PROTOCOL_VERSION}) on http://{host}:{port}/__walletmesh__",
          file=sys.stderr)
    print(f"[WalletMesh] Buffer: {RELAY_BUFFER_MAX} deliveries per subscriber, {RELAY_ENTRY_TTL}s TTL",
          file=sys.stderr)
    print(f"[WalletMesh] Idle subscribers dropped after {RELAY_SUBSCRIBER_TTL:g}s", file=sys.stderr)
    print(f"[WalletMesh] Timeouts: request {DEFAULT_REQUEST_TIMEOUT:g}s, handshake {HANDSHAKE_TIMEOUT:g}s",
          file=sys.stderr)
    print(f"[WalletMesh] Drop tracing: {'ENABLED' if TRACE_DROPS else 'disabled'}", file=sys.stderr)


# =============================================================================
# Main entry point
# =============================================================================

def main() -> None:
    host = os.environ.get("WALLETMESH_RELAY_HOST", RELAY_HOST)
    port = int(os.environ.get("WALLETMESH_RELAY_PORT", str(RELAY_PORT)))

    app = create_app()
    print_startup_banner(host, port)
    uvicorn.run(app, host=host, port=port, log_level="warning")


if __name__ == "__main__":
    main()

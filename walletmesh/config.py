"""
Configuration constants, environment variables, and feature flags.

This is a leaf module with no internal dependencies.
"""

import os

# =============================================================================
# Protocol
# =============================================================================

PROTOCOL_VERSION = "0.1"
JSONRPC_VERSION = "2.0"

# Target origin meaning "any listener" (unscoped broadcast / unscoped request)
UNSCOPED = "*"

METHOD_PROMPT = "wallet_prompt"
METHOD_ANNOUNCE = "wallet_announce"
METHOD_CREATE_SESSION = "wallet_createSession"
METHOD_INVOKE = "wallet_invokeMethod"
METHOD_REVOKE_SESSION = "wallet_revokeSession"
METHOD_NOTIFY = "wallet_notify"

# =============================================================================
# Timeouts
# =============================================================================

DEFAULT_REQUEST_TIMEOUT = float(os.environ.get("WALLETMESH_REQUEST_TIMEOUT", "60"))
HANDSHAKE_TIMEOUT = float(os.environ.get("WALLETMESH_HANDSHAKE_TIMEOUT", "300"))

# =============================================================================
# Error Codes (JSON-RPC error objects carried in responses)
# =============================================================================

ERROR_USER_REJECTED = 4001
ERROR_UNAUTHORIZED = 4100
ERROR_UNSUPPORTED_METHOD = 4200
ERROR_SESSION_EXISTS = 5300
ERROR_HANDSHAKE_IN_PROGRESS = 5301
ERROR_INTERNAL = -32603

# =============================================================================
# Limits
# =============================================================================

MAX_DISPLAY_NAME_LENGTH = 256
MAX_ICON_LENGTH = 131072     # 128 KB, data URIs included
MAX_RDNS_LENGTH = 256
MAX_ORIGIN_LENGTH = 2048

# =============================================================================
# Replay Protection (duplicate request deliveries)
# =============================================================================

REPLAY_WINDOW = 300  # seconds
REPLAY_MAX_SIZE = 10000

# =============================================================================
# HTTP Relay
# =============================================================================

RELAY_HOST = os.environ.get("WALLETMESH_RELAY_HOST", "127.0.0.1")
RELAY_PORT = int(os.environ.get("WALLETMESH_RELAY_PORT", "8470"))
RELAY_BUFFER_MAX = 500        # buffered deliveries per subscriber, oldest dropped
RELAY_ENTRY_TTL = 600         # seconds a buffered delivery is kept
RELAY_POLL_WAIT = 25.0        # max seconds a poll may block waiting for deliveries
# Subscribers that have not polled for this many seconds are dropped
RELAY_SUBSCRIBER_TTL = float(os.environ.get("WALLETMESH_RELAY_SUBSCRIBER_TTL", "120"))
RELAY_CLIENT_TIMEOUT = 30.0

# =============================================================================
# Tracing
# =============================================================================

TRACE_DROPS = os.environ.get("WALLETMESH_TRACE_DROPS", "false").lower() == "true"

"""
Constantes globales du superviseur MCP.
"""

# ============================================================================
# PROTOCOLE
# ============================================================================
JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcp-supervisor"
CLIENT_VERSION = "1.0.0"

# Capacités annoncées par le client lors du handshake
CLIENT_CAPABILITIES = {
    "roots": {"listChanged": True},
    "sampling": {},
}

# Codes d'erreur JSON-RPC 2.0
JSONRPC_PARSE_ERROR = -32700
JSONRPC_INVALID_REQUEST = -32600
JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INVALID_PARAMS = -32602
JSONRPC_INTERNAL_ERROR = -32603

# ============================================================================
# TIMEOUTS (secondes)
# ============================================================================
DEFAULT_REQUEST_TIMEOUT_S = 60.0
TOOL_CALL_TIMEOUT_S = 60.0
INITIALIZE_TIMEOUT_S = 60.0
STOP_GRACE_S = 5.0
RESTART_DELAY_S = 2.0

# ============================================================================
# KEEPALIVE
# ============================================================================
KEEPALIVE_INTERVAL_S = 30.0
KEEPALIVE_TIMEOUT_S = 5.0
KEEPALIVE_MAX_FAILURES = 2
REFRESH_IDLE_THRESHOLD_S = 300.0   # 5 min sans refresh complet
ACTIVITY_WINDOW_S = 120.0          # activité outil récente (2 min)

# ============================================================================
# FLUX STDIO
# ============================================================================
# asyncio limite une ligne à 64KiB par défaut: certains serveurs renvoient
# des réponses JSON-RPC volumineuses sur une seule ligne.
DEFAULT_STREAM_LIMIT_BYTES = 8 * 1024 * 1024  # 8 MiB
MIN_STREAM_LIMIT_BYTES = 64 * 1024
MAX_STREAM_LIMIT_BYTES = 64 * 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024

# Pagination (nextCursor) des listes tools/resources/prompts
MAX_LIST_PAGES = 50

# ============================================================================
# PERSISTANCE
# ============================================================================
CONFIG_FILE_NAME = "mcp-config.json"
CONFIG_FORMAT_VERSION = "1.0.0"

TRANSPORT_SPAWNED = "spawned"
TRANSPORT_NATIVE = "native"
TRANSPORT_KINDS = (TRANSPORT_SPAWNED, TRANSPORT_NATIVE)

# Migrations ALLOWED_DIR / ALLOWED_FLAGS: réservées au serveur CLI
CLI_MCP_SERVER_NAME = "cli-mcp-server"

# Flags PowerShell ajoutés par migration à ALLOWED_FLAGS
DEFAULT_POWERSHELL_FLAGS = ["-command", "-Command", "-ExecutionPolicy", "-NoProfile", "-NonInteractive"]

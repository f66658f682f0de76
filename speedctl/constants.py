"""
Shared constants used across the controller, probe, and worker.

Centralises tunables so they live in exactly one place.  The selection and
polling values are defaults only; every one of them can be overridden when a
``SpeedtestController`` is constructed.
"""

# ---------------------------------------------------------------------------
# HTTP headers
# ---------------------------------------------------------------------------

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/144.0.0.0 Safari/537.36"
)

COMMON_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
}

# ---------------------------------------------------------------------------
# Progress polling
# ---------------------------------------------------------------------------

POLL_INTERVAL = 0.2              # seconds between "status" requests

# ---------------------------------------------------------------------------
# Server selection
# ---------------------------------------------------------------------------

SELECTION_CONCURRENCY = 6        # number of probing lanes
PING_ATTEMPTS = 3                # probes per candidate at most
SLOW_THRESHOLD_MS = 500.0        # a probe this slow ends the candidate early
PING_TIMEOUT_MS = 2000.0         # hard timeout per probe request
UNREACHABLE = -1.0               # latency sentinel
SERVER_LIST_TIMEOUT = 10.0       # seconds to fetch a remote server list

DEFAULT_SCHEME = "https"

# ---------------------------------------------------------------------------
# Configuration keys the controller interprets
# ---------------------------------------------------------------------------

TELEMETRY_EXTRA = "telemetry_extra"
MULTI_SERVER = "mpot"

# ---------------------------------------------------------------------------
# Background worker defaults
# ---------------------------------------------------------------------------

DEFAULT_TEST_ORDER = "IP_D_U"
DEFAULT_TIME_DL_MAX = 15.0       # seconds
DEFAULT_TIME_UL_MAX = 15.0
DEFAULT_COUNT_PING = 10
DEFAULT_DL_STREAMS = 6
DEFAULT_UL_STREAMS = 3
DEFAULT_GARBAGE_CHUNKS = 100     # ckSize passed to the garbage endpoint
DEFAULT_OVERHEAD_FACTOR = 1.06   # HTTP + TCP + IP overhead compensation
PHASE_PAUSE = 1.0                # "_" in test_order

CHUNK_SIZE = 256 * 1024          # 256 KB reads on download streams
UPLOAD_BUFFER_SIZE = 1024 * 1024 # 1 MB pre-generated random payload

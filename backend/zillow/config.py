import os

# =====================
# CONFIG (tweak via env)
# =====================
BASE_URL = "https://www.zillow.com"

# Per-navigation and per-operation timeouts (ms)
NAV_TIMEOUT_MS = int(os.getenv("ZILLOW_NAV_TIMEOUT_MS", "60000"))
OP_TIMEOUT_MS = int(os.getenv("ZILLOW_OP_TIMEOUT_MS", "60000"))

# Upper bound on detail pages visited per run
MAX_CANDIDATES = int(os.getenv("ZILLOW_MAX_CANDIDATES", "50"))

# How long the network sniffer waits for search-API responses
SNIFF_WAIT_MS = int(os.getenv("ZILLOW_SNIFF_WAIT_MS", "15000"))
SNIFF_POLL_MS = 500

# Active search-API paging from the landed search state
SEARCH_API_PAGES = int(os.getenv("ZILLOW_SEARCH_API_PAGES", "3"))
SEARCH_API_CAP = 60

# Wall-clock budget for one (city/zip, mode) unit
RUN_BUDGET_S = float(os.getenv("ZILLOW_RUN_BUDGET_S", "90"))

# Concurrent browser sessions when running several units
POOL_SIZE = max(1, min(3, int(os.getenv("ZILLOW_POOL_SIZE", "2"))))
MAX_POOL_SIZE = 3

# Randomized delay between sequential units (seconds)
DELAY_MIN_S = float(os.getenv("ZILLOW_DELAY_MIN_S", "3"))
DELAY_MAX_S = float(os.getenv("ZILLOW_DELAY_MAX_S", "8"))

# Browser launch
LAUNCH_RETRIES = int(os.getenv("ZILLOW_LAUNCH_RETRIES", "2"))
LAUNCH_BACKOFF_S = float(os.getenv("ZILLOW_LAUNCH_BACKOFF_S", "1.2"))
CHROME_EXECUTABLE = os.getenv("CHROME_EXECUTABLE", "").strip() or None
HEADLESS = os.getenv("ZILLOW_HEADLESS", "true").lower() in {"1", "true", "yes"}

# Optional outbound proxy for the search-engine client
PROXY = os.getenv("ZILLOW_PROXY", "").strip() or None

# Harvest tiers, in priority order
DEFAULT_STRATEGIES = ("embedded", "network", "dom", "timing")
HARVEST_STRATEGIES = tuple(
    s.strip().lower()
    for s in os.getenv("ZILLOW_HARVEST_STRATEGIES", ",".join(DEFAULT_STRATEGIES)).split(",")
    if s.strip()
)

ZILLOW_DEBUG = os.getenv("ZILLOW_DEBUG", "").lower() in {"1", "true", "yes"}
HTTP_DEBUG = os.getenv("HTTP_DEBUG", "").lower() in {"1", "true", "yes"}

# Lead store
MONGO_URI = os.getenv("MONGO_URI", "").strip() or None
MONGO_DB = os.getenv("MONGO_DB", "zillow_assistant")
LEADS_COOLDOWN_DAYS = int(os.getenv("LEADS_COOLDOWN_DAYS", "90"))

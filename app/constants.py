import os

APP_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(APP_DIR, 'data')
CONFIG_DIR = os.path.join(APP_DIR, 'config')
CONFIG_FILE = os.path.join(CONFIG_DIR, 'settings.yaml')
KEYS_DIR = os.path.join(DATA_DIR, 'keys')
KEY_TABLE_FILE = os.path.join(KEYS_DIR, 'depotkeys.json')
BUILD_VERSIONS_FILE = os.path.join(KEYS_DIR, 'game_versions.json')
STORE_DIR = os.path.join(DATA_DIR, 'store')

BUILD_VERSION = '20261018_1200'

# File naming
SCRIPT_SUFFIX = '.lua'
SCRIPT_SUFFIXES = ('.lua', '.script')
MANIFEST_SUFFIX = '.manifest'
AUXILIARY_KEY_TABLES = (
    'depotkeys.json',
    'appaccesstokens.json',
)
STORE_EXTRA_FILES = ('copyright.txt',)

# Identifier extraction
MANIFEST_SNIFF_BYTES = 1024
MIN_REVISION_DIGITS = 10
DEPOT_SUFFIX_CANDIDATES = ('1', '2', '3', '')
UNKNOWN_TITLE_NAME = 'Unknown Game'

# Version store
STORE_WRITE_MAX_ATTEMPTS = 3
STORE_WRITE_BACKOFF_SECONDS = 1.0
STORE_DEFAULT_BRANCH = 'main'
GITHUB_API_BASE = 'https://api.github.com'

# Catalog service
STEAMCMD_INFO_URL = 'https://api.steamcmd.net/v1/info'
STEAM_STORE_URL = 'https://store.steampowered.com/api/appdetails'
CATALOG_MIN_INTERVAL = 1.0
CATALOG_TIMEOUT = 15
DECORATIVE_PATTERNS = [
    'artbook',
    'soundtrack',
    'music',
    'tools',
    'guide',
    'wallpaper',
]

# Reconciliation
RECONCILE_INTERVAL_HOURS = 6
RECONCILE_INITIAL_DELAY_MINUTES = 1
RECONCILE_ON_DEMAND_TIMEOUT = 15
DLC_ANALYSIS_TIMEOUT = 5

DEFAULT_SETTINGS = {
    "store": {
        "backend": "directory",
        "path": STORE_DIR,
        "owner": "",
        "repo": "",
        "token": "",
        "default_branch": STORE_DEFAULT_BRANCH,
    },
    "catalog": {
        "info_url": STEAMCMD_INFO_URL,
        "store_url": STEAM_STORE_URL,
        "manifest_url": "",
        "min_interval": CATALOG_MIN_INTERVAL,
        "timeout": CATALOG_TIMEOUT,
    },
    "reconciliation": {
        "enabled": True,
        "interval_hours": RECONCILE_INTERVAL_HOURS,
        "initial_delay_minutes": RECONCILE_INITIAL_DELAY_MINUTES,
        "on_demand_timeout": RECONCILE_ON_DEMAND_TIMEOUT,
    },
    "keys": {
        "path": KEY_TABLE_FILE,
        "build_versions_path": BUILD_VERSIONS_FILE,
    },
    "dlc": {
        "timeout": DLC_ANALYSIS_TIMEOUT,
        "decorative_patterns": DECORATIVE_PATTERNS,
    },
}

# Environment overrides: env var -> (section, key)
ENV_OVERRIDES = {
    'GITHUB_UPLOAD_TOKEN': ('store', 'token'),
    'GITHUB_REPO_OWNER': ('store', 'owner'),
    'GITHUB_UPLOAD_REPO_NAME': ('store', 'repo'),
    'VAULT_STORE_BACKEND': ('store', 'backend'),
    'VAULT_STORE_PATH': ('store', 'path'),
    'MANIFEST_MIRROR_URL': ('catalog', 'manifest_url'),
}

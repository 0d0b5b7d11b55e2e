"""
config.py — Loads pipeline.yaml and environment variables.
Provides typed access to all configuration.
"""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent

# Load pipeline.yaml
SETTINGS_PATH = Path(os.getenv("SCOUT_SETTINGS", PROJECT_ROOT / "pipeline.yaml"))
with open(SETTINGS_PATH, "r") as f:
    _settings = yaml.safe_load(f)


# --- Fetcher allow-list ---
ALLOWED_DOMAIN_SUFFIXES = [s.lower() for s in _settings["allow_list"]["domain_suffixes"]]
ALLOWED_HOSTS = [h.lower() for h in _settings["allow_list"]["hosts"]]

# --- Enumerations ---
SERVICE_TAGS = _settings["service_tags"]
CONTRACT_TYPES = _settings["contract_types"]
DEFAULT_CONTRACT_TYPE = CONTRACT_TYPES[0]

# --- Rate Limiting ---
RATE_LIMITS = _settings["rate_limiting"]

# --- Retry / Timeouts ---
RETRY_POLICY = _settings["retry_policy"]
TIMEOUTS = _settings["timeouts"]
FETCHER = _settings.get("fetcher", {})

# --- Classifier ---
CLASSIFIER = _settings["classifier"]

# --- Writer ---
WRITER = _settings["writer"]
PRIORITY_THRESHOLDS = _settings["priority"]

# --- Orchestrator ---
ORCHESTRATOR = _settings["orchestrator"]

# --- Sources ---
GLOBAL_SOURCES = _settings["global_sources"]
HIGHERGOV = _settings["highergov"]

# --- Digest ---
DIGEST = _settings["digest"]

# --- API Keys & Secrets (from .env) ---
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
HIGHERGOV_API_KEY = os.getenv("HIGHERGOV_API_KEY", "")
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "465"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
DIGEST_RECIPIENTS = [a.strip() for a in os.getenv("DIGEST_RECIPIENTS", "").split(",") if a.strip()]

# --- Database ---
DB_PATH = Path(os.getenv("SCOUT_DB_PATH", PROJECT_ROOT / "data" / "scout.db"))

# --- Logging ---
LOG_DIR = PROJECT_ROOT / "logs"
LOG_FILE = LOG_DIR / "opportunity_scout.log"


def validate_config():
    """Check that critical configuration is present."""
    warnings = []

    if not ANTHROPIC_API_KEY:
        warnings.append("ANTHROPIC_API_KEY is not set — classification will fail every source")
    if not HIGHERGOV_API_KEY:
        warnings.append("HIGHERGOV_API_KEY is not set — search sync will not work")
    if not SMTP_USER or not SMTP_PASSWORD:
        warnings.append("SMTP_USER/SMTP_PASSWORD are not set — digest email will not be sent")
    if not DIGEST_RECIPIENTS:
        warnings.append("DIGEST_RECIPIENTS is not set — digest email has nobody to go to")
    if not ALLOWED_DOMAIN_SUFFIXES and not ALLOWED_HOSTS:
        warnings.append("Allow-list is empty — every source will be rejected")

    return warnings

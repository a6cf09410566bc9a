"""
MAMS Configuration
Every setting in one place. The memory system's parameters.
"""

import os
from pathlib import Path

# ── Identity ─────────────────────────────────────────────
SERVER_NAME = "mams"
SERVER_VERSION = "0.4.0"

# ── Paths ────────────────────────────────────────────────
MAMS_HOME = Path(os.environ.get("MAMS_HOME", Path.home() / ".mams"))
DB_PATH = MAMS_HOME / "memory.db"
DAEMON_DIR = MAMS_HOME / "daemon"

# ── Embeddings ───────────────────────────────────────────
EMBEDDING_BACKEND = os.environ.get("MAMS_EMBEDDING_BACKEND", "hash")  # hash | sentence-transformers
EMBEDDING_MODEL = os.environ.get("MAMS_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_DIMENSION = int(os.environ.get("MAMS_EMBEDDING_DIMENSION", "384"))

# ── Buckets ──────────────────────────────────────────────
# (name, bucket type, description). Closed vocabulary.
BUCKETS = [
    ("semantic_stm", "STM", "Semantic Short-Term Memory"),
    ("semantic_ltm", "LTM", "Semantic Long-Term Memory"),
    ("procedural_stm", "STM", "Procedural Short-Term Memory"),
    ("procedural_ltm", "LTM", "Procedural Long-Term Memory"),
    ("episodic_stm", "STM", "Episodic Short-Term Memory"),
    ("episodic_ltm", "LTM", "Episodic Long-Term Memory"),
    ("diary_rl", "RL", "Diary Reinforcement Learning"),
    ("calendar_rl", "RL", "Calendar Reinforcement Learning"),
    ("api_docs", "DOCS", "API Documentation Memory"),
    ("odds_ends", "MISC", "Miscellaneous Memory"),
]
BUCKET_NAMES = [name for name, _, _ in BUCKETS]

# ── Decay ────────────────────────────────────────────────
# Per-hour multiplicative retention factor, fixed on a chunk at creation.
DECAY_RATES = {
    "STM": 0.990,
    "LTM": 0.999,
    "RL": 0.995,
    "DOCS": 0.995,
    "MISC": 0.995,
}
MIN_RETENTION_SCORE = 0.05
DECAY_DEADLINE_SECONDS = float(os.environ.get("MAMS_DECAY_DEADLINE", "300"))

# ── Scoring / Retrieval ──────────────────────────────────
DEFAULT_SCORE = 1.0
DEFAULT_BOOST = 0.1
DEFAULT_MIN_SCORE = 0.1
BUCKET_PAGE_SIZE = 10
SEARCH_LIMIT = int(os.environ.get("MAMS_SEARCH_LIMIT", "20"))

# ── Reflection ───────────────────────────────────────────
REFLECTION_GATHER_PER_BUCKET = 50
REFLECTION_SAMPLE_SIZE = 100
REFLECTION_PERSIST_LIMIT = 20
REFLECTION_SCORE_WEIGHT = 0.7
REFLECTION_RECENCY_WEIGHT = 0.3
REFLECTION_SIMILARITY_THRESHOLD = 0.7
REFLECTION_COMPARISON_WINDOW = int(os.environ.get("MAMS_REFLECTION_WINDOW", "9"))  # 0 = all pairs
REFLECTION_MAX_CONNECTIONS = 10
REFLECTION_MAX_RECOMMENDATIONS = 5
REFLECTION_INSIGHT_CAPS = {"shallow": 5, "medium": 10, "deep": 15}
REFLECTION_PERSIST_LINKS = os.environ.get("MAMS_REFLECTION_PERSIST_LINKS", "1") != "0"
REFLECTION_DEADLINE_SECONDS = float(os.environ.get("MAMS_REFLECTION_DEADLINE", "120"))
REFLECTION_SCHEDULE_DELAY_SECONDS = 5 * 60
REFLECTION_TASK_PRIORITY = 3
AUTO_REFLECT_SCOPE = ["semantic_stm", "episodic_stm", "procedural_stm"]
AUTO_REFLECT_FOCUS = ["recent_interactions", "learning_progress"]

# ── Daemon ───────────────────────────────────────────────
DECAY_INTERVAL_HOURS = float(os.environ.get("MAMS_DECAY_INTERVAL_HOURS", "1"))
TASK_POLL_MINUTES = float(os.environ.get("MAMS_TASK_POLL_MINUTES", "1"))
DEFAULT_CONDUCTOR_ID = os.environ.get("MAMS_CONDUCTOR_ID", "conductor")


def ensure_home():
    """Create the MAMS home directory if it doesn't exist."""
    MAMS_HOME.mkdir(parents=True, exist_ok=True)

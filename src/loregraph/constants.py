"""Tunable defaults shared across loregraph modules.

Everything that used to be a magic number lives here so the CLI and the
library agree on the same values.
"""

import math

# --- Entity resolution (versioned: changing these re-keys every node) ---
ID_HASH_ALGORITHM = "md5"
ID_HASH_WIDTH = 8
ID_SCHEME_VERSION = 1

# --- Graph store ---
DEFAULT_EDGE_WEIGHT = 1.0
EDGE_STATUS_ACTIVE = "active"
EDGE_STATUS_DEPRECATED = "deprecated"
LEGACY_RELATION_ALIASES = {"related_to": "relates_to"}

# --- Projection ---
SUMMARY_SNIPPET_CHARS = 120
OBSERVATION_NAME_CHARS = 80
GOAL_TAG_EDGE_WEIGHT = 0.8
DEFAULT_PATTERN_CONFIDENCE = 0.5

# --- Traversal ---
DEFAULT_TRAVERSAL_DEPTH = 10
DEFAULT_RELATED_HOPS = 2
DEFAULT_HUB_LIMIT = 10
MAX_GRAPH_EXPAND_DEPTH = 3
MAX_TRAVERSE_COMMAND_DEPTH = 3
REF_FRAGMENT_CHARS = 60
REF_FRAGMENT_MIN_CHARS = 4

# --- Lexical index ---
DEFAULT_QUERY_LIMIT = 10
SNIPPET_CHARS = 120
DEFAULT_SCOPE = "lore"
IMPORTANCE_DEFAULT = 3
IMPORTANCE_LESSON = 4
IMPORTANCE_WEIGHT = 0.2
AGE_DECAY_DAYS = 30.0
PROJECT_MATCH_BOOST = 1.5
RRF_K = 60
GRAPH_NEIGHBOR_DISCOUNT = 0.5
BACKGROUND_REFRESH_JOIN_SECONDS = 30.0

# --- Reinforcement ---
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400
SECONDS_PER_WEEK = 604800
SECONDS_PER_MONTH = 2592000  # 30 days
SECONDS_PER_YEAR = 31536000
LN_2 = math.log(2)
REINFORCEMENT_HALF_LIFE_DAYS = 30.0
REINFORCEMENT_FREQUENCY_WEIGHT = 0.15

# --- Conflict detection ---
DUPLICATE_THRESHOLD = 0.8
DUPLICATE_LOOKBACK = 20
DUPLICATE_MIN_WORDS = 3
CONTRADICTION_MAX_SIMILARITY = 0.3
CONTRADICTION_MIN_SHARED_ENTITIES = 1
RECURRING_FAILURE_THRESHOLD = 3

# --- Embeddings ---
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_EMBEDDING_DIMENSION = 384

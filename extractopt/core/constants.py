"""
Core Constants

Centralized constants for magic values used across the codebase.
Organized by domain for clarity.
"""

# =============================================================================
# Prompt Quality Rules
# =============================================================================

MIN_PROMPT_LENGTH = 350         # Characters; shorter instructions are rejected outright
MIN_SYNONYM_PHRASES = 6         # Distinct quoted alternative phrases
MIN_QUOTED_PHRASE_CHARS = 3     # Shorter quoted text does not count as a phrase
MIN_PROMPT_ELEMENTS = 4         # Of location/synonyms/format/disambiguation/not-found
MAX_PROMPT_DEFECTS = 1          # Soft gate: one missing element is tolerated
PRECHECK_MIN_HEURISTICS = 3     # Resolver's lighter 3-of-4 genericity check

NOT_PRESENT = "Not Present"

# =============================================================================
# Request Building
# =============================================================================

MAX_FAILURE_EXAMPLES = 3
MAX_SUCCESS_EXAMPLES = 2
MAX_PREVIOUS_INSTRUCTIONS = 2
MAX_ENUM_SAMPLE_OPTIONS = 3
FAILURE_VALUE_TRUNCATE = 80
SUCCESS_VALUE_TRUNCATE = 60
PREVIOUS_INSTRUCTION_TRUNCATE = 100
URGENCY_ITERATION = 3           # Iteration from which the request stresses urgency
MIN_EXCLUSION_REPEATS = 2       # Wrong value must repeat this often to be excluded
MIN_EXCLUSION_VALUE_CHARS = 3

# =============================================================================
# Optimizer Run
# =============================================================================

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_HISTORY_LIMIT = 3       # Most-recent rejected instructions kept per field
DEFAULT_FIELD_CONCURRENCY = 3
MAX_SAMPLED_DOCS = 6
MAX_DOCS_PER_FIELD = 3
PERFECT_ACCURACY = 0.999999     # Fields at or above this are not optimized
MAX_THEORY_CHARS = 240
THEORY_ELLIPSIS = "…"

# =============================================================================
# AI Service
# =============================================================================

DEFAULT_API_BASE_URL = "https://api.box.com/2.0"
TEXT_GEN_ENDPOINT = "/ai/text_gen"
DEFAULT_GENERATION_MODEL = "azure__openai__gpt_4o_mini"
DEFAULT_ATTEMPT_TIMEOUT = 30.0  # Seconds per call attempt
DEFAULT_ACCESS_TOKEN_ENV = "BOX_ACCESS_TOKEN"
DEFAULT_UPLOAD_BASE_URL = "https://upload.box.com/api/2.0"
PLACEHOLDER_FILE_NAME = "extractopt-blank-placeholder.txt"
PLACEHOLDER_FOLDER_ID = "0"     # Root folder of the authenticated user
FOLDER_PAGE_SIZE = 1000

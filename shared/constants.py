"""Centralized constants"""

# Autosave
DEFAULT_AUTOSAVE_DEBOUNCE_MS = 500
GRAPH_SAVE_TIMEOUT_SECONDS = 30
ASSISTED_EDIT_TIMEOUT_SECONDS = 300  # chat/agent-assisted edits

# Graph
SPEC_VERSION = "1"
GRAPH_META_KEY = "reactflow_graph"
MAX_NODES_PER_WORKFLOW = 1000

# Branch slots per branching block kind, in allocation order
IF_ELSE_BRANCHES = ("true", "false")
FOR_LOOP_BRANCHES = ("loop", "exit")

# Block defaults
DEFAULT_LLM_MODEL = "gpt-5-mini"
DEFAULT_LLM_USER_PROMPT = "Enter your prompt here"
DEFAULT_LLM_TEMPERATURE = 0.2

# Trigger keys
WEBHOOK_TRIGGER_KEY = "webhook.generic"
GMAIL_TRIGGER_KEY = "poll.gmail.email_received"
CRON_TRIGGER_KEY = "schedule.cron"
SUPABASE_TRIGGER_KEY = "supabase.db_change"

# Gmail polling
GMAIL_DEFAULT_LABEL_IDS = "INBOX"
GMAIL_MAX_RESULTS = 25
GMAIL_DEFAULT_OVERLAP_MS = 300000  # 5 minutes
GMAIL_MAX_OVERLAP_MS = 900000      # 15 minutes

# Cron
DEFAULT_CRON_EXPRESSION = "0 9 * * *"
DEFAULT_TIMEZONE = "UTC"
CRON_FIELD_RANGES = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

# Supabase change-data-capture
SUPABASE_EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")
DEFAULT_SUPABASE_SCHEMA = "public"

# Bindings
EVENT_PREFIX = "event."
INPUT_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

"""
constants.py – single source of hard-coded names
"""

# Command status machine: pending → processing → completed | failed
#                         processing → pending  (reaped)
STATUS_PENDING    = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED  = "completed"
STATUS_FAILED     = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

DELIVERY_SUCCESS = "success"
DELIVERY_FAILED  = "failed"

# Redis keys / templates
KEY_COMMAND        = "bridge:command:{}"        # HASH  one per command
KEY_PENDING        = "bridge:pending:{}"        # ZSET  conn → ids, score = seq
KEY_PROCESSING     = "bridge:processing:{}"     # ZSET  conn → ids, score = leased_at
KEY_COMMAND_SEQ    = "bridge:command_seq"       # INT   creation order
KEY_CONNECTION     = "bridge:connection:{}"     # HASH  counters + liveness
KEY_CONNECTIONS    = "bridge:connections"       # SET   known connection ids
KEY_ROUTE          = "bridge:route:{}"          # HASH  room → connection rules
KEY_DELIVERIES     = "bridge:deliveries"        # LIST  JSON rows, oldest → newest

TAG_PREFIX = "sb-"          # MT5 comment, must stay ≤ 31 chars
TAG_ID_LEN = 12

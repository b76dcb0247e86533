from __future__ import annotations

TICKET_ID_PREFIX = "TKT-"
TICKET_ID_FORMAT = "TKT-{:04d}"

CLOSER_OWNER = "owner"
CLOSER_STAFF = "staff"
CLOSER_ADMIN = "admin"
CLOSER_SYSTEM = "system"

CLOSER_ROLES = (CLOSER_OWNER, CLOSER_STAFF, CLOSER_ADMIN, CLOSER_SYSTEM)
REASON_REQUIRED_ROLES = frozenset({CLOSER_OWNER, CLOSER_STAFF})

# Permission names match discord.PermissionOverwrite attributes.
PERM_VIEW_CHANNEL = "view_channel"
PERM_SEND_MESSAGES = "send_messages"
PERM_ATTACH_FILES = "attach_files"
PERM_READ_HISTORY = "read_message_history"
PERM_EMBED_LINKS = "embed_links"
PERM_MANAGE_CHANNELS = "manage_channels"
PERM_EXTERNAL_EMOJIS = "use_external_emojis"
PERM_EXTERNAL_STICKERS = "use_external_stickers"

OWNER_PERMISSIONS = frozenset(
    {
        PERM_VIEW_CHANNEL,
        PERM_SEND_MESSAGES,
        PERM_ATTACH_FILES,
        PERM_READ_HISTORY,
        PERM_EMBED_LINKS,
        PERM_EXTERNAL_EMOJIS,
        PERM_EXTERNAL_STICKERS,
    }
)
STAFF_PERMISSIONS = frozenset(
    {
        PERM_VIEW_CHANNEL,
        PERM_SEND_MESSAGES,
        PERM_ATTACH_FILES,
        PERM_READ_HISTORY,
        PERM_EMBED_LINKS,
    }
)
ADMIN_PERMISSIONS = STAFF_PERMISSIONS | {PERM_MANAGE_CHANNELS}

ACL_TARGET_EVERYONE = "everyone"
ACL_TARGET_ROLE = "role"
ACL_TARGET_MEMBER = "member"

REPLACES_CATEGORY = "replaces"

CLOSE_REASON_CHANNEL_DELETED = "Channel deleted"
CLOSE_REASON_RECONCILED = "Channel deleted or process restarted"
CLOSE_REASON_SATISFIED = "Resolved: satisfaction confirmed in ticket channel"
CLOSE_REASON_RATING_TIMEOUT = "Rating window expired"

# Marker searched in recent bot messages to detect a close already in progress.
CLOSE_NOTICE_TITLE = "Ticket Closed - Waiting for Evaluation"

RATING_KIND_SERVICE = "service"
RATING_KIND_STAFF = "staff"
RATING_MIN = 1
RATING_MAX = 5
POSITIVE_REVIEW_MIN_AVERAGE = 4

TRANSCRIPT_MESSAGE_CAP = 1000
TRANSCRIPT_PAGE_SIZE = 100

DEFAULT_SATISFACTION_PHRASES = (
    "thank you",
    "thanks",
    "thx",
    "ty",
    "tysm",
    "appreciate it",
    "problem solved",
    "issue solved",
    "all good now",
    "gracias",
)

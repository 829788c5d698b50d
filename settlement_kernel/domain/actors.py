"""Well-known actor identities."""

from uuid import UUID

# Actor recorded on rows written by cron-triggered passes.
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")

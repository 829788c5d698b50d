"""
Follow-up Configuration Schema.

Rules that drive reminder campaigns: when the first reminder goes out,
how stages escalate after the due date, and how many sends each stage
gets.  Defaults mirror a typical small-business dunning policy: three
courtesy reminders in the last three days before the due date, then
overdue reminders 1, 3 and 7 days after it.
"""

from dataclasses import dataclass

from settlement_kernel.logging_config import get_logger

logger = get_logger("modules.followup.config")

APPROACHING_DEADLINE = "approaching_deadline"
OVERDUE = "overdue"


@dataclass(frozen=True)
class FollowUpRules:
    """
    Configuration schema for follow-up scheduling and dispatch.

        rules = FollowUpRules(approaching_deadline_days=5, stage_delays_days=(2, 7, 14))
    """

    # Look-ahead window before the due date
    approaching_deadline_days: int = 3

    # Overdue escalation: stage N fires stage_delays_days[N-1] days after due
    max_stages: int = 3
    stage_delays_days: tuple[int, ...] = (1, 3, 7)

    # Sends per stage before escalating
    max_attempts_approaching: int = 3
    max_attempts_overdue: int = 1

    # Minimum spacing between two sends of the same campaign
    retry_interval_days: int = 1

    # Failed rows in a row before the scheduler stops recreating
    max_consecutive_failures: int = 3

    # Hour (UTC) at which a reminder scheduled for a day becomes due
    dispatch_hour_utc: int = 8

    max_dispatch_per_pass: int = 100

    approaching_template: str = "invoice_payment_reminder"
    overdue_template: str = "invoice_overdue_reminder"
    default_client_name: str = "Madame, Monsieur"

    def __post_init__(self):
        if self.approaching_deadline_days < 0:
            raise ValueError("approaching_deadline_days cannot be negative")
        if self.max_stages < 1:
            raise ValueError("max_stages must be at least 1")
        if len(self.stage_delays_days) != self.max_stages:
            raise ValueError(
                f"stage_delays_days must have {self.max_stages} entries, "
                f"got {len(self.stage_delays_days)}"
            )
        if any(d <= 0 for d in self.stage_delays_days):
            raise ValueError("stage_delays_days must be positive")
        if list(self.stage_delays_days) != sorted(set(self.stage_delays_days)):
            raise ValueError("stage_delays_days must be strictly ascending")
        if self.max_attempts_approaching < 1 or self.max_attempts_overdue < 1:
            raise ValueError("max attempts must be at least 1")
        if self.retry_interval_days < 1:
            raise ValueError("retry_interval_days must be at least 1")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be at least 1")
        if not 0 <= self.dispatch_hour_utc <= 23:
            raise ValueError("dispatch_hour_utc must be between 0 and 23")
        if self.max_dispatch_per_pass < 1:
            raise ValueError("max_dispatch_per_pass must be at least 1")
        if not self.approaching_template or not self.overdue_template:
            raise ValueError("template names cannot be empty")
        logger.debug(
            "followup_rules_initialized",
            extra={
                "approaching_deadline_days": self.approaching_deadline_days,
                "stage_delays_days": list(self.stage_delays_days),
            },
        )

    def delay_for_stage(self, stage: int) -> int:
        """Days after the due date at which overdue ``stage`` fires."""
        if not 1 <= stage <= self.max_stages:
            raise ValueError(f"stage must be between 1 and {self.max_stages}, got {stage}")
        return self.stage_delays_days[stage - 1]

    def stage_for_days_overdue(self, days_overdue: int) -> int:
        """Highest stage whose threshold has been reached (minimum 1)."""
        stage = 1
        for index, delay in enumerate(self.stage_delays_days, start=1):
            if days_overdue >= delay:
                stage = index
        return stage

    def max_attempts_for(self, kind: str) -> int:
        if kind == APPROACHING_DEADLINE:
            return self.max_attempts_approaching
        return self.max_attempts_overdue

    def template_for(self, kind: str) -> str:
        if kind == APPROACHING_DEADLINE:
            return self.approaching_template
        return self.overdue_template

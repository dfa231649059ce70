"""
Trust levels, default quotas and quota messages.

Quota names keep the camelCase identifiers used in stored user overrides
(``User.quotas_json``); usage types name the ``UserUsage`` columns.
"""

from __future__ import annotations

import enum
from typing import Dict, Mapping


class TrustLevel(enum.IntEnum):
    UNTRUSTED = 0
    BASIC = 1
    REGULAR = 2
    TRUSTED = 3
    POWER_USER = 4
    UNLIMITED = 5


class QuotaType(str, enum.Enum):
    ACTIVE_SCHEDULES = "maxActiveSchedules"
    URL_FETCHES_PER_DAY = "maxUrlFetchesPerDay"
    FILE_UPLOADS_PER_DAY = "maxFileUploadsPerDay"
    EVENTS_PER_IMPORT = "maxEventsPerImport"
    TOTAL_EVENTS = "maxTotalEvents"
    IMPORT_JOBS_PER_DAY = "maxImportJobsPerDay"
    FILE_SIZE_MB = "maxFileSizeMB"
    CATALOGS_PER_USER = "maxCatalogsPerUser"

    @property
    def is_daily(self) -> bool:
        return "PerDay" in self.value


class UsageType(str, enum.Enum):
    CURRENT_ACTIVE_SCHEDULES = "current_active_schedules"
    URL_FETCHES_TODAY = "url_fetches_today"
    FILE_UPLOADS_TODAY = "file_uploads_today"
    IMPORT_JOBS_TODAY = "import_jobs_today"
    TOTAL_EVENTS_CREATED = "total_events_created"
    CURRENT_CATALOGS = "current_catalogs"

    @property
    def is_daily(self) -> bool:
        return self.value.endswith("_today")


DAILY_USAGE_TYPES: tuple[UsageType, ...] = tuple(usage for usage in UsageType if usage.is_daily)

UNLIMITED = -1

# Quotas without a usage counter (checked against the requested amount only).
QUOTA_USAGE_FIELDS: Mapping[QuotaType, UsageType | None] = {
    QuotaType.ACTIVE_SCHEDULES: UsageType.CURRENT_ACTIVE_SCHEDULES,
    QuotaType.URL_FETCHES_PER_DAY: UsageType.URL_FETCHES_TODAY,
    QuotaType.FILE_UPLOADS_PER_DAY: UsageType.FILE_UPLOADS_TODAY,
    QuotaType.EVENTS_PER_IMPORT: None,
    QuotaType.TOTAL_EVENTS: UsageType.TOTAL_EVENTS_CREATED,
    QuotaType.IMPORT_JOBS_PER_DAY: UsageType.IMPORT_JOBS_TODAY,
    QuotaType.FILE_SIZE_MB: None,
    QuotaType.CATALOGS_PER_USER: UsageType.CURRENT_CATALOGS,
}


def _quotas(
    schedules: int,
    url_fetches: int,
    uploads: int,
    events_per_import: int,
    total_events: int,
    jobs: int,
    file_size: int,
    catalogs: int,
) -> Dict[QuotaType, int]:
    return {
        QuotaType.ACTIVE_SCHEDULES: schedules,
        QuotaType.URL_FETCHES_PER_DAY: url_fetches,
        QuotaType.FILE_UPLOADS_PER_DAY: uploads,
        QuotaType.EVENTS_PER_IMPORT: events_per_import,
        QuotaType.TOTAL_EVENTS: total_events,
        QuotaType.IMPORT_JOBS_PER_DAY: jobs,
        QuotaType.FILE_SIZE_MB: file_size,
        QuotaType.CATALOGS_PER_USER: catalogs,
    }


DEFAULT_QUOTAS: Mapping[TrustLevel, Mapping[QuotaType, int]] = {
    TrustLevel.UNTRUSTED: _quotas(0, 0, 1, 100, 100, 1, 1, 1),
    TrustLevel.BASIC: _quotas(1, 5, 3, 1000, 5000, 5, 10, 2),
    TrustLevel.REGULAR: _quotas(5, 20, 10, 10000, 50000, 20, 50, 5),
    TrustLevel.TRUSTED: _quotas(20, 100, 50, 50000, 500000, 100, 100, 20),
    TrustLevel.POWER_USER: _quotas(100, 500, 200, 200000, 2000000, 500, 500, 100),
    TrustLevel.UNLIMITED: _quotas(-1, -1, -1, -1, -1, -1, 1000, -1),
}

TRUST_LEVEL_LABELS: Mapping[TrustLevel, str] = {
    TrustLevel.UNTRUSTED: "Untrusted",
    TrustLevel.BASIC: "Basic User",
    TrustLevel.REGULAR: "Regular User",
    TrustLevel.TRUSTED: "Trusted User",
    TrustLevel.POWER_USER: "Power User",
    TrustLevel.UNLIMITED: "Unlimited",
}

QUOTA_ERROR_MESSAGES: Mapping[QuotaType, str] = {
    QuotaType.ACTIVE_SCHEDULES: (
        "Maximum active schedules reached ({current}/{limit}). Disable an existing schedule to add more."
    ),
    QuotaType.URL_FETCHES_PER_DAY: "Daily URL fetch limit reached ({current}/{limit}). Resets at midnight UTC.",
    QuotaType.FILE_UPLOADS_PER_DAY: "Daily file upload limit reached ({current}/{limit}). Resets at midnight UTC.",
    QuotaType.EVENTS_PER_IMPORT: (
        "This import would exceed the maximum events per import ({limit}). Please reduce the import size."
    ),
    QuotaType.TOTAL_EVENTS: "Total events limit reached ({current}/{limit}). Contact admin for increased quota.",
    QuotaType.IMPORT_JOBS_PER_DAY: "Daily import job limit reached ({current}/{limit}). Resets at midnight UTC.",
    QuotaType.FILE_SIZE_MB: "File size exceeds your limit ({limit}MB). Contact admin for increased quota.",
    QuotaType.CATALOGS_PER_USER: (
        "Maximum catalogs reached ({current}/{limit}). Delete an existing catalog to create more."
    ),
}


def format_quota_message(quota_type: QuotaType, current: int, limit: int) -> str:
    return QUOTA_ERROR_MESSAGES[quota_type].format(current=current, limit=limit)

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from jobsync.engine.models import (
    Fetcher,
    Projection,
    Role,
    Session,
    SyncDomain,
    organization_owner_key,
    parse_owner_key,
    user_owner_key,
)
from jobsync.engine.realtime import ORGANIZATION_SCOPE, RealtimeBinding
from jobsync.engine.timings import DEFAULT_DOMAIN_TIMING, DEFAULT_DOMAIN_TIMINGS, DomainTiming
from jobsync.services.data_source import Filter, Page, in_list

PAGE_SIZE = 50
LIST_LIMIT = 100
APPLICATIONS_LIMIT = 50
CONVERSATIONS_LIMIT = 50
UNREAD_SCAN_LIMIT = 500
ACTIVE_INTERVIEW_STATUSES = ("pending", "confirmed")
UNKNOWN_CANDIDATE = "Unknown"
UNKNOWN_JOB = "Unknown position"

AVAILABLE_JOB_COLUMNS = (
    "id,title,location,employment_type,workplace_city,workplace_county,salary_min,salary_max,"
    "salary_type,salary_transparency,created_at,expires_at,is_active,job_image_url,"
    "profiles:employer_id(company_name,company_logo_url)"
)
APPLICATION_COLUMNS = (
    "id,job_id,status,applied_at,created_at,"
    "job_postings(id,title,location,employment_type,workplace_city,workplace_county,is_active,"
    "created_at,expires_at,applications_count,profiles:employer_id(company_name,company_logo_url))"
)
CANDIDATE_APPLICATION_COLUMNS = (
    "id,applicant_id,first_name,last_name,email,phone,location,bio,cv_url,status,applied_at,job_postings(title)"
)
PIPELINE_APPLICATION_COLUMNS = (
    "id,job_id,applicant_id,first_name,last_name,email,phone,location,bio,cv_url,age,employment_status,"
    "work_schedule,availability,custom_answers,status,applied_at,updated_at,viewed_at,"
    "job_postings!inner(title,occupation)"
)
MESSAGE_PROFILE_COLUMNS = "user_id,first_name,last_name,company_name,profile_image_url,company_logo_url,role"
UNKNOWN_PIPELINE_JOB = "Unknown job"


class RemoteDataSource(Protocol):
    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: tuple[Filter, ...] | list[Filter] = (),
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def fetch_page(
        self,
        table: str,
        *,
        cursor_column: str,
        columns: str = "*",
        filters: tuple[Filter, ...] | list[Filter] = (),
        cursor: str | None = None,
        page_size: int = 50,
    ) -> Page: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DomainCatalog:
    """Fetch routines for every data domain the app keeps warm."""

    def __init__(self, data_source: RemoteDataSource, *, utc_now: Callable[[], datetime] = _utc_now) -> None:
        self.data_source = data_source
        self.utc_now = utc_now

    async def fetch_available_jobs(self, owner_key: str) -> list[dict[str, Any]]:
        return await self.data_source.select(
            "job_postings",
            columns=AVAILABLE_JOB_COLUMNS,
            filters=[("is_active", "eq.true")],
            order="created_at.desc",
            limit=LIST_LIMIT,
        )

    async def fetch_saved_jobs(self, owner_key: str) -> list[str]:
        scope = parse_owner_key(owner_key)
        rows = await self.data_source.select(
            "saved_jobs",
            columns="job_id,created_at",
            filters=[("user_id", f"eq.{scope.user_id}")],
        )
        return sorted({str(row["job_id"]) for row in rows if row.get("job_id")})

    async def fetch_my_applications(self, owner_key: str) -> list[dict[str, Any]]:
        scope = parse_owner_key(owner_key)
        return await self.data_source.select(
            "job_applications",
            columns=APPLICATION_COLUMNS,
            filters=[("applicant_id", f"eq.{scope.user_id}")],
            order="applied_at.desc",
            limit=APPLICATIONS_LIMIT,
        )

    async def fetch_conversations(self, owner_key: str) -> list[dict[str, Any]]:
        memberships = await self._memberships(owner_key)
        if not memberships:
            return []
        conversation_ids = [str(row["conversation_id"]) for row in memberships]
        return await self.data_source.select(
            "conversations",
            columns="id,name,is_group,job_id,last_message_at,created_at",
            filters=[("id", in_list(conversation_ids))],
            order="last_message_at.desc.nullslast",
            limit=CONVERSATIONS_LIMIT,
        )

    async def fetch_unread_count(self, owner_key: str) -> dict[str, Any]:
        scope = parse_owner_key(owner_key)
        memberships = await self._memberships(owner_key)
        if not memberships:
            return {"total": 0, "by_conversation": {}}

        last_read = {str(row["conversation_id"]): parse_timestamp(row.get("last_read_at")) for row in memberships}
        rows = await self.data_source.select(
            "conversation_messages",
            columns="conversation_id,sender_id,created_at",
            filters=[
                ("conversation_id", in_list(list(last_read))),
                ("sender_id", f"neq.{scope.user_id}"),
            ],
            order="created_at.desc",
            limit=UNREAD_SCAN_LIMIT,
        )

        by_conversation: dict[str, int] = {}
        for row in rows:
            conversation_id = str(row.get("conversation_id"))
            if conversation_id not in last_read:
                continue
            created_at = parse_timestamp(row.get("created_at"))
            read_at = last_read[conversation_id]
            if read_at is None or (created_at is not None and created_at > read_at):
                by_conversation[conversation_id] = by_conversation.get(conversation_id, 0) + 1
        return {"total": sum(by_conversation.values()), "by_conversation": by_conversation}

    async def fetch_candidate_interviews(self, owner_key: str) -> list[dict[str, Any]]:
        scope = parse_owner_key(owner_key)
        return await self.data_source.select(
            "interviews",
            columns="*,job_postings(title,employer_id,profiles:employer_id(company_name,first_name,last_name))",
            filters=self._upcoming_interview_filters("applicant_id", scope.user_id),
            order="scheduled_at.asc",
        )

    async def fetch_messages(self, owner_key: str) -> dict[str, Any]:
        scope = parse_owner_key(owner_key)
        inbox, sent = await asyncio.gather(
            self.data_source.fetch_page(
                "messages",
                cursor_column="created_at",
                columns="*,job:job_id(title)",
                filters=[("recipient_id", f"eq.{scope.user_id}")],
                page_size=PAGE_SIZE,
            ),
            self.data_source.fetch_page(
                "messages",
                cursor_column="created_at",
                columns="*,job:job_id(title)",
                filters=[("sender_id", f"eq.{scope.user_id}")],
                page_size=PAGE_SIZE,
            ),
        )
        # Inbox rows show who wrote them, sent rows who received them.
        counterpart_ids = sorted(
            {str(row["sender_id"]) for row in inbox.items if row.get("sender_id")}
            | {str(row["recipient_id"]) for row in sent.items if row.get("recipient_id")}
        )
        profiles: dict[str, dict[str, Any]] = {}
        if counterpart_ids:
            rows = await self.data_source.select(
                "profiles",
                columns=MESSAGE_PROFILE_COLUMNS,
                filters=[("user_id", in_list(counterpart_ids))],
            )
            profiles = {str(row["user_id"]): row for row in rows if row.get("user_id")}

        return {
            "inbox": _with_profiles(inbox, "sender_id", "sender_profile", profiles),
            "sent": _with_profiles(sent, "recipient_id", "recipient_profile", profiles),
            "profiles": profiles,
        }

    async def fetch_employer_jobs(self, owner_key: str) -> list[dict[str, Any]]:
        scope = parse_owner_key(owner_key)
        if scope.organization_id:
            owner_filter: Filter = ("organization_id", f"eq.{scope.organization_id}")
        else:
            owner_filter = ("employer_id", f"eq.{scope.user_id}")
        return await self.data_source.select(
            "job_postings",
            columns="*,employer_profile:profiles!job_postings_employer_id_fkey(first_name,last_name)",
            filters=[owner_filter, ("deleted_at", "is.null")],
            order="created_at.desc",
            limit=LIST_LIMIT,
        )

    async def fetch_employer_interviews(self, owner_key: str) -> list[dict[str, Any]]:
        scope = parse_owner_key(owner_key)
        rows = await self.data_source.select(
            "interviews",
            columns="*,job_postings(title),job_applications(first_name,last_name)",
            filters=self._upcoming_interview_filters("employer_id", scope.user_id),
            order="scheduled_at.asc",
        )
        return [_with_interview_labels(row) for row in rows]

    async def fetch_my_candidates(self, owner_key: str) -> list[dict[str, Any]]:
        scope = parse_owner_key(owner_key)
        candidates = await self.data_source.select(
            "my_candidates",
            filters=[("recruiter_id", f"eq.{scope.user_id}")],
            order="updated_at.desc",
            limit=LIST_LIMIT,
        )
        if not candidates:
            return []

        application_ids = [str(row["application_id"]) for row in candidates if row.get("application_id")]
        applications: list[dict[str, Any]] = []
        if application_ids:
            applications = await self.data_source.select(
                "job_applications",
                columns=CANDIDATE_APPLICATION_COLUMNS,
                filters=[("id", in_list(application_ids))],
            )
        by_id = {str(row["id"]): row for row in applications}
        return [_merge_candidate(row, by_id.get(str(row.get("application_id")))) for row in candidates]

    async def fetch_candidate_applications(self, owner_key: str) -> dict[str, Any]:
        """Newest applications across the employer's postings, with the recruiter's ratings merged in."""
        scope = parse_owner_key(owner_key)
        page = await self.data_source.fetch_page(
            "job_applications",
            cursor_column="applied_at",
            columns=PIPELINE_APPLICATION_COLUMNS,
            page_size=PAGE_SIZE,
        )
        applicant_ids = sorted({str(row["applicant_id"]) for row in page.items if row.get("applicant_id")})
        ratings: dict[str, Any] = {}
        if applicant_ids:
            rows = await self.data_source.select(
                "candidate_ratings",
                columns="applicant_id,rating",
                filters=[("recruiter_id", f"eq.{scope.user_id}"), ("applicant_id", in_list(applicant_ids))],
            )
            ratings = {str(row["applicant_id"]): row.get("rating") for row in rows if row.get("applicant_id")}

        items = [_with_pipeline_fields(row, ratings.get(str(row.get("applicant_id")))) for row in page.items]
        return {"items": items, "next_cursor": page.next_cursor}

    async def fetch_stage_settings(self, owner_key: str) -> list[dict[str, Any]]:
        scope = parse_owner_key(owner_key)
        return await self.data_source.select(
            "user_stage_settings",
            filters=[("user_id", f"eq.{scope.user_id}")],
            order="order_index.asc",
        )

    async def _memberships(self, owner_key: str) -> list[dict[str, Any]]:
        scope = parse_owner_key(owner_key)
        return await self.data_source.select(
            "conversation_members",
            columns="conversation_id,last_read_at",
            filters=[("user_id", f"eq.{scope.user_id}")],
        )

    def _upcoming_interview_filters(self, owner_column: str, owner_id: str) -> list[Filter]:
        return [
            (owner_column, f"eq.{owner_id}"),
            ("scheduled_at", f"gte.{self.utc_now().isoformat()}"),
            ("status", in_list(ACTIVE_INTERVIEW_STATUSES)),
        ]


def applied_job_ids(applications: Any) -> list[str]:
    if not isinstance(applications, list):
        return []
    return sorted({str(row["job_id"]) for row in applications if isinstance(row, dict) and row.get("job_id")})


def message_profiles(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    profiles = payload.get("profiles")
    return profiles if isinstance(profiles, dict) else {}


def candidate_ratings(payload: Any) -> dict[str, Any]:
    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return {}
    return {
        str(row["applicant_id"]): row["rating"]
        for row in items
        if isinstance(row, dict) and row.get("applicant_id") and row.get("rating") is not None
    }


ROLE_DOMAIN_NAMES: dict[Role, tuple[str, ...]] = {
    Role.JOB_SEEKER: (
        "available_jobs",
        "saved_jobs",
        "my_applications",
        "conversations",
        "unread_count",
        "candidate_interviews",
        "messages",
    ),
    Role.EMPLOYER: (
        "employer_jobs",
        "employer_interviews",
        "my_candidates",
        "candidate_applications",
        "stage_settings",
        "conversations",
        "unread_count",
        "messages",
    ),
}

_CONVERSATION_BINDINGS = (
    RealtimeBinding(entity="conversation_messages", domains=("conversations", "unread_count"), event="INSERT"),
    RealtimeBinding(entity="conversation_members", domains=("conversations", "unread_count"), owner_column="user_id"),
    RealtimeBinding(entity="messages", domains=("messages",), event="INSERT", owner_column="recipient_id"),
)

# Every pipeline table refreshes both pipeline views.
_PIPELINE_DOMAINS = ("candidate_applications", "my_candidates")

ROLE_BINDINGS: dict[Role, tuple[RealtimeBinding, ...]] = {
    Role.JOB_SEEKER: (
        RealtimeBinding(entity="saved_jobs", domains=("saved_jobs",), owner_column="user_id"),
        RealtimeBinding(entity="job_applications", domains=("my_applications",), owner_column="applicant_id"),
        RealtimeBinding(entity="job_postings", domains=("available_jobs",), event="INSERT"),
        RealtimeBinding(entity="interviews", domains=("candidate_interviews",), owner_column="applicant_id"),
        *_CONVERSATION_BINDINGS,
    ),
    Role.EMPLOYER: (
        RealtimeBinding(
            entity="job_postings",
            domains=("employer_jobs",),
            owner_column="organization_id",
            scope=ORGANIZATION_SCOPE,
            fallback_column="employer_id",
        ),
        RealtimeBinding(entity="interviews", domains=("employer_interviews",), owner_column="employer_id"),
        RealtimeBinding(entity="my_candidates", domains=_PIPELINE_DOMAINS, owner_column="recruiter_id"),
        RealtimeBinding(entity="job_applications", domains=_PIPELINE_DOMAINS),
        RealtimeBinding(entity="candidate_ratings", domains=_PIPELINE_DOMAINS, owner_column="recruiter_id"),
        RealtimeBinding(entity="candidate_notes", domains=_PIPELINE_DOMAINS),
        *_CONVERSATION_BINDINGS,
    ),
}


def build_domain(
    name: str,
    fetch: Fetcher,
    *,
    timings: Mapping[str, DomainTiming] | None = None,
    owner_key_of: Callable[[Session], str] = user_owner_key,
    projections: Mapping[str, Projection] | None = None,
) -> SyncDomain:
    timing = (timings or DEFAULT_DOMAIN_TIMINGS).get(name, DEFAULT_DOMAIN_TIMING)
    return SyncDomain(
        name=name,
        owner_key_of=owner_key_of,
        fetch=fetch,
        freshness_window_ms=timing.freshness_window_ms,
        refresh_interval_ms=timing.refresh_interval_ms,
        projections=dict(projections or {}),
    )


def build_role_domains(
    role: Role,
    catalog: DomainCatalog,
    timings: Mapping[str, DomainTiming] | None = None,
) -> list[SyncDomain]:
    factories: dict[str, Callable[[], SyncDomain]] = {
        "available_jobs": lambda: build_domain("available_jobs", catalog.fetch_available_jobs, timings=timings),
        "saved_jobs": lambda: build_domain("saved_jobs", catalog.fetch_saved_jobs, timings=timings),
        "my_applications": lambda: build_domain(
            "my_applications",
            catalog.fetch_my_applications,
            timings=timings,
            projections={"applied_job_ids": applied_job_ids},
        ),
        "conversations": lambda: build_domain("conversations", catalog.fetch_conversations, timings=timings),
        "unread_count": lambda: build_domain("unread_count", catalog.fetch_unread_count, timings=timings),
        "candidate_interviews": lambda: build_domain(
            "candidate_interviews", catalog.fetch_candidate_interviews, timings=timings
        ),
        "messages": lambda: build_domain(
            "messages",
            catalog.fetch_messages,
            timings=timings,
            projections={"message_profiles": message_profiles},
        ),
        "employer_jobs": lambda: build_domain(
            "employer_jobs",
            catalog.fetch_employer_jobs,
            timings=timings,
            owner_key_of=organization_owner_key,
        ),
        "employer_interviews": lambda: build_domain(
            "employer_interviews", catalog.fetch_employer_interviews, timings=timings
        ),
        "my_candidates": lambda: build_domain("my_candidates", catalog.fetch_my_candidates, timings=timings),
        "candidate_applications": lambda: build_domain(
            "candidate_applications",
            catalog.fetch_candidate_applications,
            timings=timings,
            projections={"candidate_ratings": candidate_ratings},
        ),
        "stage_settings": lambda: build_domain("stage_settings", catalog.fetch_stage_settings, timings=timings),
    }
    return [factories[name]() for name in ROLE_DOMAIN_NAMES[Role(role)]]


def build_role_bindings(role: Role) -> tuple[RealtimeBinding, ...]:
    return ROLE_BINDINGS[Role(role)]


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _with_interview_labels(row: dict[str, Any]) -> dict[str, Any]:
    application = row.get("job_applications") or {}
    posting = row.get("job_postings") or {}
    full_name = " ".join(
        part for part in (application.get("first_name") or "", application.get("last_name") or "") if part
    ).strip()
    return {
        **row,
        "candidate_name": full_name or UNKNOWN_CANDIDATE,
        "job_title": posting.get("title") or UNKNOWN_JOB,
    }


def _merge_candidate(candidate: dict[str, Any], application: dict[str, Any] | None) -> dict[str, Any]:
    app = application or {}
    posting = app.get("job_postings") or {}
    return {
        "id": candidate.get("id"),
        "recruiter_id": candidate.get("recruiter_id"),
        "applicant_id": candidate.get("applicant_id"),
        "application_id": candidate.get("application_id"),
        "job_id": candidate.get("job_id"),
        "stage": candidate.get("stage"),
        "notes": candidate.get("notes"),
        "rating": candidate.get("rating") or 0,
        "created_at": candidate.get("created_at"),
        "updated_at": candidate.get("updated_at"),
        "first_name": app.get("first_name"),
        "last_name": app.get("last_name"),
        "email": app.get("email"),
        "phone": app.get("phone"),
        "location": app.get("location"),
        "bio": app.get("bio"),
        "cv_url": app.get("cv_url"),
        "status": app.get("status") or "pending",
        "job_title": posting.get("title") if isinstance(posting, dict) else None,
        "applied_at": app.get("applied_at"),
    }


def _with_profiles(page: Page, id_column: str, profile_field: str, profiles: Mapping[str, Any]) -> dict[str, Any]:
    items = [{**row, profile_field: profiles.get(str(row.get(id_column)))} for row in page.items]
    return {"items": items, "next_cursor": page.next_cursor}


def _with_pipeline_fields(row: dict[str, Any], rating: Any) -> dict[str, Any]:
    posting = row.get("job_postings") or {}
    merged = {key: value for key, value in row.items() if key != "job_postings"}
    merged["job_title"] = posting.get("title") or UNKNOWN_PIPELINE_JOB
    merged["job_occupation"] = posting.get("occupation")
    merged["rating"] = rating
    return merged

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from jobsync.engine.domains import (
    ROLE_DOMAIN_NAMES,
    DomainCatalog,
    applied_job_ids,
    build_role_bindings,
    build_role_domains,
    candidate_ratings,
    message_profiles,
    parse_timestamp,
)
from jobsync.engine.models import Role, Session, organization_owner_key
from jobsync.engine.timings import resolve_domain_timings
from jobsync.services.data_source import Page

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeDataSource:
    def __init__(self, tables: dict[str, list[dict[str, Any]]]) -> None:
        self.tables = tables
        self.queries: list[dict[str, Any]] = []

    async def select(self, table: str, *, columns: str = "*", filters=(), order=None, limit=None) -> list[dict[str, Any]]:
        self.queries.append({"table": table, "filters": list(filters), "order": order, "limit": limit})
        return list(self.tables.get(table, []))

    async def fetch_page(self, table: str, *, cursor_column: str, columns: str = "*", filters=(), cursor=None, page_size=50) -> Page:
        self.queries.append({"table": table, "filters": list(filters), "cursor": cursor})
        # "messages?recipient_id" style keys serve rows for one owner filter.
        scoped = f"{table}?{filters[0][0]}" if filters else table
        return Page(items=list(self.tables.get(scoped, self.tables.get(table, []))), next_cursor=None)


def _catalog(tables: dict[str, list[dict[str, Any]]]) -> tuple[DomainCatalog, FakeDataSource]:
    source = FakeDataSource(tables)
    return DomainCatalog(source, utc_now=lambda: NOW), source


def test_unread_count_only_counts_messages_after_last_read() -> None:
    catalog, source = _catalog(
        {
            "conversation_members": [
                {"conversation_id": "c-1", "last_read_at": "2024-06-01T10:00:00Z"},
                {"conversation_id": "c-2", "last_read_at": None},
            ],
            "conversation_messages": [
                {"conversation_id": "c-1", "sender_id": "u-9", "created_at": "2024-06-01T11:00:00Z"},
                {"conversation_id": "c-1", "sender_id": "u-9", "created_at": "2024-06-01T09:00:00Z"},
                {"conversation_id": "c-2", "sender_id": "u-8", "created_at": "2024-05-01T09:00:00Z"},
                {"conversation_id": "c-3", "sender_id": "u-8", "created_at": "2024-06-01T11:30:00Z"},
            ],
        }
    )

    result = asyncio.run(catalog.fetch_unread_count("u:user-1"))

    assert result == {"total": 2, "by_conversation": {"c-1": 1, "c-2": 1}}
    message_query = source.queries[-1]
    assert ("sender_id", "neq.user-1") in message_query["filters"]
    assert ("conversation_id", "in.(c-1,c-2)") in message_query["filters"]


def test_unread_count_without_memberships_is_zero() -> None:
    catalog, source = _catalog({})
    assert asyncio.run(catalog.fetch_unread_count("u:user-1")) == {"total": 0, "by_conversation": {}}
    assert [query["table"] for query in source.queries] == ["conversation_members"]


def test_conversations_are_scoped_to_memberships() -> None:
    catalog, source = _catalog(
        {
            "conversation_members": [{"conversation_id": "c-1"}, {"conversation_id": "c-2"}],
            "conversations": [{"id": "c-1"}, {"id": "c-2"}],
        }
    )

    rows = asyncio.run(catalog.fetch_conversations("u:user-1"))

    assert rows == [{"id": "c-1"}, {"id": "c-2"}]
    assert ("id", "in.(c-1,c-2)") in source.queries[-1]["filters"]


def test_saved_jobs_payload_is_sorted_id_list() -> None:
    catalog, _ = _catalog({"saved_jobs": [{"job_id": "j-2"}, {"job_id": "j-1"}, {"job_id": "j-2"}]})
    assert asyncio.run(catalog.fetch_saved_jobs("u:user-1")) == ["j-1", "j-2"]


def test_employer_interviews_get_display_labels() -> None:
    catalog, source = _catalog(
        {
            "interviews": [
                {"id": "i-1", "job_applications": {"first_name": "Ana", "last_name": "Pop"}, "job_postings": {"title": "Cook"}},
                {"id": "i-2", "job_applications": None, "job_postings": None},
            ]
        }
    )

    rows = asyncio.run(catalog.fetch_employer_interviews("u:emp-1"))

    assert [(row["candidate_name"], row["job_title"]) for row in rows] == [
        ("Ana Pop", "Cook"),
        ("Unknown", "Unknown position"),
    ]
    filters = source.queries[0]["filters"]
    assert ("employer_id", "eq.emp-1") in filters
    assert ("scheduled_at", f"gte.{NOW.isoformat()}") in filters
    assert ("status", "in.(pending,confirmed)") in filters


def test_my_candidates_merge_application_details() -> None:
    catalog, _ = _catalog(
        {
            "my_candidates": [
                {"id": "mc-1", "application_id": "a-1", "stage": "shortlisted", "rating": None},
                {"id": "mc-2", "application_id": None, "stage": "new", "rating": 4},
            ],
            "job_applications": [
                {"id": "a-1", "first_name": "Ion", "status": "reviewed", "job_postings": {"title": "Driver"}},
            ],
        }
    )

    rows = asyncio.run(catalog.fetch_my_candidates("u:emp-1"))

    assert rows[0]["first_name"] == "Ion"
    assert rows[0]["status"] == "reviewed"
    assert rows[0]["job_title"] == "Driver"
    assert rows[0]["rating"] == 0
    assert rows[1]["first_name"] is None
    assert rows[1]["status"] == "pending"
    assert rows[1]["rating"] == 4


def test_employer_jobs_use_organization_when_present() -> None:
    catalog, source = _catalog({"job_postings": []})
    session = Session(user_id="emp-1", role=Role.EMPLOYER, organization_id="org-3")

    asyncio.run(catalog.fetch_employer_jobs(organization_owner_key(session)))
    asyncio.run(catalog.fetch_employer_jobs("u:emp-1"))

    assert ("organization_id", "eq.org-3") in source.queries[0]["filters"]
    assert ("employer_id", "eq.emp-1") in source.queries[1]["filters"]
    assert ("deleted_at", "is.null") in source.queries[1]["filters"]


def test_messages_payload_holds_inbox_and_sent_pages() -> None:
    catalog, source = _catalog({"messages": [{"id": "m-1"}]})
    payload = asyncio.run(catalog.fetch_messages("u:user-1"))
    assert payload == {
        "inbox": {"items": [{"id": "m-1", "sender_profile": None}], "next_cursor": None},
        "sent": {"items": [{"id": "m-1", "recipient_profile": None}], "next_cursor": None},
        "profiles": {},
    }
    assert "profiles" not in [query["table"] for query in source.queries]


def test_messages_attach_counterpart_profiles_in_one_lookup() -> None:
    catalog, source = _catalog(
        {
            "messages?recipient_id": [
                {"id": "m-1", "sender_id": "emp-1", "recipient_id": "user-1"},
                {"id": "m-2", "sender_id": "emp-2", "recipient_id": "user-1"},
            ],
            "messages?sender_id": [{"id": "m-3", "sender_id": "user-1", "recipient_id": "emp-1"}],
            "profiles": [
                {"user_id": "emp-1", "company_name": "Bakery AB", "role": "employer"},
                {"user_id": "emp-2", "company_name": "Cafe AB", "role": "employer"},
            ],
        }
    )

    payload = asyncio.run(catalog.fetch_messages("u:user-1"))

    assert [row["sender_profile"]["company_name"] for row in payload["inbox"]["items"]] == ["Bakery AB", "Cafe AB"]
    assert payload["sent"]["items"][0]["recipient_profile"]["company_name"] == "Bakery AB"
    assert message_profiles(payload) == {
        "emp-1": {"user_id": "emp-1", "company_name": "Bakery AB", "role": "employer"},
        "emp-2": {"user_id": "emp-2", "company_name": "Cafe AB", "role": "employer"},
    }
    profile_queries = [query for query in source.queries if query["table"] == "profiles"]
    assert len(profile_queries) == 1
    assert profile_queries[0]["filters"] == [("user_id", "in.(emp-1,emp-2)")]


def test_candidate_applications_merge_recruiter_ratings() -> None:
    catalog, source = _catalog(
        {
            "job_applications": [
                {"id": "a-1", "applicant_id": "cand-1", "job_postings": {"title": "Cook", "occupation": "Chef"}},
                {"id": "a-2", "applicant_id": "cand-2", "job_postings": None},
            ],
            "candidate_ratings": [{"applicant_id": "cand-1", "rating": 4}],
        }
    )

    payload = asyncio.run(catalog.fetch_candidate_applications("u:emp-1"))

    first, second = payload["items"]
    assert (first["job_title"], first["job_occupation"], first["rating"]) == ("Cook", "Chef", 4)
    assert (second["job_title"], second["rating"]) == ("Unknown job", None)
    assert "job_postings" not in first
    assert payload["next_cursor"] is None
    assert candidate_ratings(payload) == {"cand-1": 4}
    rating_filters = source.queries[-1]["filters"]
    assert ("recruiter_id", "eq.emp-1") in rating_filters
    assert ("applicant_id", "in.(cand-1,cand-2)") in rating_filters


def test_stage_settings_are_ordered_per_user() -> None:
    catalog, source = _catalog({"user_stage_settings": [{"stage_key": "new", "order_index": 0}]})

    rows = asyncio.run(catalog.fetch_stage_settings("u:emp-1"))

    assert rows == [{"stage_key": "new", "order_index": 0}]
    assert source.queries[0]["filters"] == [("user_id", "eq.emp-1")]
    assert source.queries[0]["order"] == "order_index.asc"


def test_employer_pipeline_bindings_cover_ratings_and_notes() -> None:
    bindings = {binding.entity: binding for binding in build_role_bindings(Role.EMPLOYER)}

    for entity in ("job_applications", "candidate_ratings", "candidate_notes", "my_candidates"):
        assert set(bindings[entity].domains) == {"candidate_applications", "my_candidates"}
    assert bindings["candidate_ratings"].owner_column == "recruiter_id"


def test_role_domains_follow_role_catalog() -> None:
    catalog, _ = _catalog({})
    timings = resolve_domain_timings()

    seeker = build_role_domains(Role.JOB_SEEKER, catalog, timings)
    employer = build_role_domains(Role.EMPLOYER, catalog, timings)

    assert [spec.name for spec in seeker] == list(ROLE_DOMAIN_NAMES[Role.JOB_SEEKER])
    assert [spec.name for spec in employer] == list(ROLE_DOMAIN_NAMES[Role.EMPLOYER])
    by_name = {spec.name: spec for spec in employer}
    assert by_name["employer_jobs"].refresh_interval_ms is None
    assert by_name["employer_jobs"].owner_key_of(
        Session(user_id="emp-1", role=Role.EMPLOYER, organization_id="org-3")
    ) == "u:emp-1|o:org-3"
    assert {spec.name: spec for spec in seeker}["messages"].freshness_window_ms == 180_000
    assert {binding.entity for binding in build_role_bindings(Role.EMPLOYER)} >= {"job_postings", "my_candidates"}


def test_applied_job_ids_projection() -> None:
    assert applied_job_ids([{"job_id": "j-2"}, {"job_id": "j-1"}, {"id": "x"}]) == ["j-1", "j-2"]
    assert applied_job_ids(None) == []


def test_parse_timestamp_normalizes_to_utc() -> None:
    assert parse_timestamp("2024-06-01T10:00:00Z") == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2024-06-01T10:00:00") == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None

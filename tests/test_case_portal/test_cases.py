"""Tests for case_portal.cases: the case lifecycle."""

import csv
import io
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from case_portal.cases import (
    CSV_HEADERS,
    CaseEngine,
    StatusPolicy,
    sanitize_text,
    validate_contact,
)
from case_portal.errors import NotFoundError, ValidationError
from case_portal.sessions import Identity, Plane
from case_portal.store import CASES
from case_portal.uploads import AttachmentStore

from .conftest import make_contact

JANE = Identity(email="jane@x.com", role="client", plane=Plane.CLIENT)


@pytest.fixture
def attachments(tmp_path):
    return AttachmentStore(tmp_path / "uploads")


@pytest.fixture
def engine(store, dispatcher, attachments, clock):
    return CaseEngine(
        store, dispatcher, attachments=attachments, staff_address="staff@example.com", clock=clock
    )


@pytest.fixture
def case(engine):
    return engine.create(make_contact())


class TestValidateContact:
    def test_sanitizes_and_lowercases(self):
        fields = validate_contact(make_contact(name=" <b>Jane</b> ", email="Jane@X.com"))
        assert fields["name"] == "bJane/b"
        assert fields["email"] == "jane@x.com"

    def test_collects_all_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_contact({"name": "J", "email": "bad", "phone": "123"})
        message = exc_info.value.safe_message
        assert "at least 2 characters" in message
        assert "Invalid email" in message
        assert "too short" in message

    def test_phone_optional(self):
        assert validate_contact(make_contact(phone=""))["phone"] == ""

    def test_message_truncated(self):
        assert len(validate_contact(make_contact(message="x" * 6000))["message"]) == 5000

    def test_strips_script_vectors(self):
        assert sanitize_text("javascript:alert(1) onclick=go()") == "alert(1) go()"


class TestCreate:
    def test_create_case(self, engine, case):
        assert re.match(r"^C-[A-Z0-9]+$", case["id"])
        assert case["status"] == "new"
        assert case["createdAt"] == case["updatedAt"]
        assert case["updates"] == case["notes"] == case["clientReplies"] == []
        assert engine.get_public(case["id"])["status"] == "new"

    def test_ids_unique(self, engine):
        ids = {engine.create(make_contact())["id"] for _ in range(20)}
        assert len(ids) == 20

    def test_notifies_submitter(self, case, notifier):
        sent = notifier.of_kind("case_created")
        assert len(sent) == 1
        assert sent[0].to == "jane@x.com"
        assert case["id"] in sent[0].subject

    def test_invalid_contact_discards_staged(self, engine, attachments):
        staged = [attachments.stage("a.txt", "text/plain", b"hello")]
        with pytest.raises(ValidationError):
            engine.create(make_contact(email="bad"), staged)
        assert not staged[0].path.exists()

    def test_files_moved_into_case_folder(self, engine, attachments):
        staged = [attachments.stage("report.pdf", "application/pdf", b"%PDF-1.4")]
        case = engine.create(make_contact(), staged)
        record = case["files"][0]
        assert record["originalName"] == "report.pdf"
        assert record["url"] == f"/api/uploads/{case['id']}/{record['filename']}"
        assert attachments.resolve(case["id"], record["filename"]).read_bytes() == b"%PDF-1.4"


class TestViews:
    def test_public_view_fields(self, engine, case):
        engine.update(case["id"], notes="internal only", actor="admin@example.com")
        engine.reply(case["id"], JANE, "hello")
        view = engine.get_public(case["id"])
        assert set(view) == {"id", "status", "createdAt", "service", "updates"}

    def test_public_view_malformed_id(self, engine):
        with pytest.raises(ValidationError):
            engine.get_public("../etc")

    def test_public_view_unknown_id(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_public("C-NOPE")

    def test_client_view_hides_internal(self, engine, case):
        engine.update(case["id"], notes="internal", actor="admin@example.com")
        engine.record_email(
            to="jane@x.com", subject="Hi", message="Body", case_id=case["id"], sent_by="admin"
        )
        [view] = engine.cases_for("JANE@x.com")
        assert "notes" not in view
        assert "emailHistory" not in view
        assert view["id"] == case["id"]

    def test_cases_for_other_email(self, engine, case):
        assert engine.cases_for("other@x.com") == []

    def test_staff_view_full(self, engine, case):
        engine.update(case["id"], notes="internal", actor="admin@example.com")
        assert engine.get(case["id"])["notes"][0]["message"] == "internal"


class TestUpdate:
    def test_status_change(self, engine, case, notifier):
        result = engine.update(case["id"], status="in-progress", actor="admin@example.com")
        assert result.status_changed is True
        assert result.case["status"] == "in-progress"
        entry = result.case["updates"][-1]
        assert entry["message"] == "Status changed to in-progress"
        assert entry["status"] == "in-progress"
        assert len(notifier.of_kind("status_changed")) == 1

    def test_same_status_no_entry_no_notification(self, engine, case, notifier):
        result = engine.update(case["id"], status="new")
        assert result.status_changed is False
        assert result.case["updates"] == []
        assert notifier.of_kind("status_changed") == []

    def test_notes_go_to_internal_log(self, engine, case, notifier):
        result = engine.update(case["id"], notes="Called client", actor="admin@example.com")
        assert result.case["notes"][-1]["message"] == "Called client"
        assert result.case["notes"][-1]["author"] == "admin@example.com"
        assert result.case["updates"] == []
        assert notifier.of_kind("status_changed") == []

    def test_raw_updates_appended(self, engine, case):
        raw = [{"timestamp": "2026-01-01T00:00:00+00:00", "message": "imported", "status": "new"}]
        result = engine.update(case["id"], raw_updates=raw)
        assert result.case["updates"] == raw

    def test_raw_updates_must_be_objects(self, engine, case):
        with pytest.raises(ValidationError):
            engine.update(case["id"], raw_updates=["nope"])

    def test_unknown_status(self, engine, case):
        with pytest.raises(ValidationError):
            engine.update(case["id"], status="archived")

    def test_unknown_case(self, engine):
        with pytest.raises(NotFoundError):
            engine.update("C-MISSING", status="completed")

    def test_updated_at_refreshes(self, engine, case, clock):
        clock.advance(minutes=5)
        result = engine.update(case["id"], notes="x")
        assert result.case["updatedAt"] > case["createdAt"]

    def test_updated_at_never_moves_backwards(self, engine, case, clock):
        clock.advance(hours=1)
        later = engine.update(case["id"], notes="a").case["updatedAt"]
        clock.advance(hours=-2)
        assert engine.update(case["id"], notes="b").case["updatedAt"] == later

    def test_concurrent_notes_all_logged(self, engine, case):
        def _note(i):
            engine.update(case["id"], notes=f"note {i}", actor="admin@example.com")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(_note, range(20)))

        notes = engine.get(case["id"])["notes"]
        assert sorted(n["message"] for n in notes) == sorted(f"note {i}" for i in range(20))

    def test_concurrent_status_changes_one_entry_each(self, store, dispatcher, clock):
        engine = CaseEngine(store, dispatcher, clock=clock)
        case = engine.create(make_contact())
        sequence = ["in-progress", "on-hold"] * 10

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda s: engine.update(case["id"], status=s), sequence))

        changed = sum(r.status_changed for r in results)
        assert len(engine.get(case["id"])["updates"]) == changed


class TestTransitionPolicy:
    def test_permissive_by_default(self, engine, case):
        engine.update(case["id"], status="completed")
        assert engine.update(case["id"], status="new").case["status"] == "new"

    def test_enforced_graph(self, store, dispatcher, clock):
        engine = CaseEngine(store, dispatcher, policy=StatusPolicy(True), clock=clock)
        case = engine.create(make_contact())
        with pytest.raises(ValidationError):
            engine.update(case["id"], status="completed")
        engine.update(case["id"], status="in-progress")
        engine.update(case["id"], status="on-hold")
        engine.update(case["id"], status="in-progress")
        engine.update(case["id"], status="completed")
        with pytest.raises(ValidationError):
            engine.update(case["id"], status="in-progress")

    def test_rejected_transition_changes_nothing(self, store, dispatcher, clock):
        engine = CaseEngine(store, dispatcher, policy=StatusPolicy(True), clock=clock)
        case = engine.create(make_contact())
        with pytest.raises(ValidationError):
            engine.update(case["id"], status="completed", notes="should not land")
        assert engine.get(case["id"])["notes"] == []


class TestBulkUpdate:
    def test_unknown_ids_skipped(self, engine, store, clock):
        store.mutate(
            CASES,
            lambda r: r.update(
                {"C-1": {"id": "C-1", "email": "a@b.com", "status": "new", "updates": [],
                         "createdAt": clock().isoformat()}}
            ),
        )
        result = engine.bulk_update(["C-1", "C-999"], status="completed")
        assert result.updated == 1
        assert engine.get("C-1")["updates"][-1]["status"] == "completed"

    def test_notifies_each_changed_case(self, engine, notifier):
        a = engine.create(make_contact(email="a@x.com"))
        b = engine.create(make_contact(email="b@x.com"))
        engine.bulk_update([a["id"], b["id"]], status="in-progress", actor="admin@example.com")
        assert {n.to for n in notifier.of_kind("status_changed")} == {"a@x.com", "b@x.com"}

    def test_duplicate_ids_counted_once(self, engine, case):
        result = engine.bulk_update([case["id"], case["id"]], status="on-hold")
        assert result.updated == 1
        assert len(engine.get(case["id"])["updates"]) == 1

    def test_notes_only(self, engine, case):
        result = engine.bulk_update([case["id"]], notes="batch note")
        assert result.updated == 1
        assert engine.get(case["id"])["notes"][-1]["message"] == "batch note"

    def test_strict_mode_skips_illegal(self, store, dispatcher, clock):
        engine = CaseEngine(store, dispatcher, policy=StatusPolicy(True), clock=clock)
        a = engine.create(make_contact())
        b = engine.create(make_contact())
        engine.update(b["id"], status="in-progress")
        result = engine.bulk_update([a["id"], b["id"]], status="completed")
        assert result.updated == 1
        assert result.skipped == [a["id"]]

    @pytest.mark.parametrize("bad", [[], None, "C-1", [1, 2]])
    def test_bad_ids(self, engine, bad):
        with pytest.raises(ValidationError):
            engine.bulk_update(bad, status="completed")


class TestReply:
    def test_reply_appended_and_forwarded(self, engine, case, notifier):
        updated = engine.reply(case["id"], JANE, "Any news?")
        assert updated["clientReplies"][-1]["message"] == "Any news?"
        assert updated["clientReplies"][-1]["from"] == "client"
        [forwarded] = notifier.of_kind("client_replied")
        assert forwarded.to == "staff@example.com"

    def test_reply_to_foreign_case(self, engine, case):
        mallory = Identity(email="m@x.com", role="client", plane=Plane.CLIENT)
        with pytest.raises(NotFoundError):
            engine.reply(case["id"], mallory, "hi")

    def test_empty_reply(self, engine, case):
        with pytest.raises(ValidationError):
            engine.reply(case["id"], JANE, "   ")


class TestRecordEmail:
    def test_records_history(self, engine, case, notifier):
        recorded = engine.record_email(
            to="jane@x.com",
            subject="Next steps",
            message="Please send documents.",
            case_id=case["id"],
            priority="high",
            sent_by="admin@example.com",
        )
        assert recorded is True
        entry = engine.get(case["id"])["emailHistory"][-1]
        assert entry["subject"] == "Next steps"
        assert entry["sentBy"] == "admin@example.com"
        assert entry["status"] == "queued"
        [sent] = notifier.of_kind("staff_email")
        assert sent.body.startswith("[HIGH PRIORITY]")

    def test_without_case(self, engine, notifier):
        assert engine.record_email(to="x@y.com", subject="s", message="m", sent_by="a") is False
        assert len(notifier.of_kind("staff_email")) == 1

    def test_missing_fields(self, engine):
        with pytest.raises(ValidationError):
            engine.record_email(to="x@y.com", subject="", message="m", sent_by="a")

    def test_bad_priority(self, engine):
        with pytest.raises(ValidationError):
            engine.record_email(
                to="x@y.com", subject="s", message="m", sent_by="a", priority="meh"
            )


class TestListCases:
    @pytest.fixture
    def populated(self, engine, clock):
        ids = []
        for i, (name, status) in enumerate(
            [("Alice", "new"), ("Bob", "completed"), ("Carol", "new"), ("Dave", "on-hold")]
        ):
            case = engine.create(make_contact(name=name, email=f"{name.lower()}@x.com"))
            if status != "new":
                engine.update(case["id"], status=status)
            ids.append(case["id"])
            clock.advance(days=1)
        return ids

    def test_default_newest_first(self, engine, populated):
        result = engine.list_cases({})
        assert [c["name"] for c in result["cases"]] == ["Dave", "Carol", "Bob", "Alice"]
        assert result["pagination"]["total"] == 4

    def test_pagination(self, engine, populated):
        result = engine.list_cases({"page": "2", "limit": "3"})
        assert len(result["cases"]) == 1
        assert result["pagination"] == {
            "page": 2, "limit": 3, "total": 4, "totalPages": 2,
            "hasNextPage": False, "hasPrevPage": True,
        }

    def test_limit_capped(self, engine, populated):
        assert engine.list_cases({"limit": "500"})["pagination"]["limit"] == 100

    def test_status_filter(self, engine, populated):
        result = engine.list_cases({"status": "new"})
        assert {c["name"] for c in result["cases"]} == {"Alice", "Carol"}

    def test_search(self, engine, populated):
        result = engine.list_cases({"search": "CAROL"})
        assert [c["name"] for c in result["cases"]] == ["Carol"]

    def test_sort_by_name_asc(self, engine, populated):
        result = engine.list_cases({"sortBy": "name", "sortOrder": "asc"})
        assert [c["name"] for c in result["cases"]] == ["Alice", "Bob", "Carol", "Dave"]

    def test_date_range_inclusive(self, engine, populated):
        start = datetime(2026, 3, 2, tzinfo=timezone.utc).date().isoformat()
        end = datetime(2026, 3, 3, tzinfo=timezone.utc).date().isoformat()
        result = engine.list_cases({"startDate": start, "endDate": end, "sortOrder": "asc"})
        assert [c["name"] for c in result["cases"]] == ["Bob", "Carol"]

    def test_naive_legacy_timestamps(self, engine, store, populated):
        def _import(records):
            legacy = dict(records[populated[0]], id="C-LEGACY", name="Legacy")
            legacy["createdAt"] = legacy["updatedAt"] = "2026-02-15T08:00:00"
            records["C-LEGACY"] = legacy

        store.mutate(CASES, _import)
        result = engine.list_cases({"startDate": "2026-02-01", "endDate": "2026-03-01"})
        assert [c["name"] for c in result["cases"]] == ["Alice", "Legacy"]
        newest_first = engine.list_cases({})["cases"]
        assert newest_first[-1]["name"] == "Legacy"

    def test_bad_sort_field(self, engine):
        with pytest.raises(ValidationError):
            engine.list_cases({"sortBy": "__class__"})

    def test_bad_date(self, engine):
        with pytest.raises(ValidationError):
            engine.list_cases({"startDate": "yesterday"})


class TestExportCsv:
    def test_columns_and_quoting(self, engine, clock):
        engine.create(make_contact(name='Jane "JD" Doe, Esq'))
        text = engine.export_csv()
        rows = list(csv.reader(io.StringIO(text)))
        assert rows[0] == CSV_HEADERS
        assert rows[1][1] == 'Jane "JD" Doe, Esq'
        assert rows[1][6] == "2026-03-01"
        assert '"Jane ""JD"" Doe, Esq"' in text

    def test_oldest_first(self, engine, clock):
        engine.create(make_contact(name="First"))
        clock.advance(hours=1)
        engine.create(make_contact(name="Second"))
        rows = list(csv.reader(io.StringIO(engine.export_csv())))
        assert [r[1] for r in rows[1:]] == ["First", "Second"]

    def test_empty(self, engine):
        assert engine.export_csv() == ",".join(CSV_HEADERS) + "\n"

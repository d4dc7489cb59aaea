"""
Tests for the write-through ledger, the in-memory store and the post-call summarizer.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from breezy.db import InMemoryDB, load_business_seed
from breezy.schemas.pydantic_schemas import AISummary, CallSession, CallStatus, EventType, statuses_below
from breezy.services.broadcaster import EventBroadcaster
from breezy.services.ledger import Ledger
from breezy.services.transcript_processor import CallSummarizer, merge_summary


def make_call(call_sid="CA1", **fields):
    return CallSession(business_id="biz-1", call_sid=call_sid, from_number="+15551234567", to_number="+15550001111", **fields)


# ------------------------------------------------------------------ #
# Reconciliation on write failure
# ------------------------------------------------------------------ #


class TestLedgerWrites:

    def test_failed_write_is_flagged_not_raised(self):
        db = MagicMock()
        db.update_call.side_effect = ConnectionError("store offline")
        ledger = Ledger(db, EventBroadcaster())
        assert ledger.update_call("CA1", {"status": CallStatus.COMPLETED}) is None
        [missed] = ledger.missed_writes
        assert missed.operation == "update_call"
        assert missed.key == "CA1"
        assert "store offline" in missed.error

    def test_failed_insert_returns_local_copy(self):
        db = MagicMock()
        db.insert_call_if_absent.side_effect = ConnectionError("store offline")
        ledger = Ledger(db, EventBroadcaster())
        call = make_call()
        stored, created = ledger.insert_call(call)
        assert stored is call
        assert created is True
        assert len(ledger.missed_writes) == 1

    def test_reconciliation_log_is_bounded(self):
        db = MagicMock()
        db.append_transcript.side_effect = ConnectionError("store offline")
        ledger = Ledger(db, EventBroadcaster(), max_missed=2)
        for i in range(5):
            ledger.append_transcript("CA1", f"fragment {i}")
        assert len(ledger.missed_writes) == 2
        assert ledger.missed_write_summary()[0]["operation"] == "append_transcript"

    def test_successful_write_not_flagged(self):
        db = InMemoryDB()
        ledger = Ledger(db, EventBroadcaster())
        ledger.insert_call(make_call())
        assert ledger.append_transcript("CA1", "hello").transcript == "hello"
        assert len(ledger.missed_writes) == 0

    def test_receipt_lookup_failure_is_a_miss(self):
        db = MagicMock()
        db.get_receipt.side_effect = ConnectionError("store offline")
        assert Ledger(db, EventBroadcaster()).get_receipt("voice:CA1:tok") is None

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self):
        broadcaster = EventBroadcaster()
        queue = broadcaster.subscribe("biz-1")
        Ledger(InMemoryDB(), broadcaster).publish(EventType.CALL_UPDATED, "biz-1", {"call_sid": "CA1"})
        assert (await queue.get()).payload == {"call_sid": "CA1"}


# ------------------------------------------------------------------ #
# In-memory store
# ------------------------------------------------------------------ #


class TestInMemoryDB:

    def test_insert_if_absent(self):
        db = InMemoryDB()
        _, created = db.insert_call_if_absent(make_call())
        again, created_again = db.insert_call_if_absent(make_call(status=CallStatus.COMPLETED))
        assert created and not created_again
        assert again.status == CallStatus.QUEUED

    def test_conditional_update(self):
        db = InMemoryDB()
        db.insert_call_if_absent(make_call(status=CallStatus.COMPLETED))
        assert db.update_call("CA1", {"status": CallStatus.RINGING}, statuses_below(CallStatus.RINGING)) is None
        assert db.get_call("CA1").status == CallStatus.COMPLETED

    def test_reads_are_copies(self):
        db = InMemoryDB()
        db.insert_call_if_absent(make_call())
        db.get_call("CA1").transcript = "mutated"
        assert db.get_call("CA1").transcript == ""

    def test_business_lookup_by_last_ten_digits(self, tmp_path):
        seed = tmp_path / "businesses.json"
        seed.write_text('[{"id": "biz-9", "name": "Corner Cafe", "phone_number": "+1 555 000 2222"}]')
        db = InMemoryDB()
        assert load_business_seed(db, str(seed)) == 1
        assert db.get_business_by_number("5550002222").id == "biz-9"
        assert db.get_business_by_number("+15550009999") is None

    def test_missing_seed_file(self, tmp_path):
        assert load_business_seed(InMemoryDB(), str(tmp_path / "absent.json")) == 0


# ------------------------------------------------------------------ #
# Post-call summary
# ------------------------------------------------------------------ #


class TestCallSummarizer:

    @pytest.mark.asyncio
    async def test_summary_merged_into_call(self):
        db = InMemoryDB()
        ledger = Ledger(db, EventBroadcaster())
        db.insert_call_if_absent(make_call(transcript="my boiler is broken", ai_summary=AISummary(intent="repair", keywords=["boiler"])))
        llm = MagicMock()
        llm.summarize_transcript = AsyncMock(return_value={
            "summary": "Boiler repair request.",
            "sentiment": "negative",
            "actionItems": ["Book engineer"],
            "followUpRequired": True,
        })
        merged = await CallSummarizer(ledger, llm).summarize("CA1")
        assert merged.summary == "Boiler repair request."
        assert merged.intent == "repair"
        assert merged.keywords == ["boiler"]
        assert merged.action_items == ["Book engineer"]
        assert db.get_call("CA1").ai_summary.follow_up_required is True

    @pytest.mark.asyncio
    async def test_summary_failure_is_logged_not_raised(self):
        db = InMemoryDB()
        db.insert_call_if_absent(make_call(transcript="hello"))
        llm = MagicMock()
        llm.summarize_transcript = AsyncMock(side_effect=RuntimeError("model offline"))
        assert await CallSummarizer(Ledger(db, EventBroadcaster()), llm).summarize("CA1") is None
        assert db.get_call("CA1").ai_summary is None

    @pytest.mark.asyncio
    async def test_no_transcript_skips_model(self):
        db = InMemoryDB()
        db.insert_call_if_absent(make_call())
        llm = MagicMock()
        llm.summarize_transcript = AsyncMock()
        assert await CallSummarizer(Ledger(db, EventBroadcaster()), llm).summarize("CA1") is None
        llm.summarize_transcript.assert_not_awaited()

    def test_merge_ignores_malformed_fields(self):
        merged = merge_summary(AISummary(keywords=["a"], follow_up_required=True), {"keywords": "oops", "followUpRequired": "yes"})
        assert merged.keywords == ["a"]
        assert merged.follow_up_required is True

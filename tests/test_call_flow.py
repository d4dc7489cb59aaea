"""
Tests for the pure call state transitions and their TwiML rendering.
"""

from datetime import datetime, timedelta, timezone

from breezy.schemas.pydantic_schemas import (
    DayHours,
    CallSession,
    CallStatus,
    DecisionAction,
    EventType,
    ExtractedInfo,
    FlowState,
    HandledBy,
    OrchestratorDecision,
)
from breezy.services import call_flow
from breezy.services.call_flow import Dial, Gather, Hangup, Record, Redirect, Say
from breezy.services.twiml import render_voice

from conftest import FIXED_NOW, FORWARDING_NUMBER, make_business


def make_call(status=CallStatus.ANSWERED, flow_state=FlowState.IN_CONVERSATION, **fields):
    return CallSession(
        business_id="biz-1",
        call_sid="CA1",
        from_number="+15551234567",
        to_number="+15550001111",
        status=status,
        flow_state=flow_state,
        start_time=FIXED_NOW,
        **fields,
    )


def make_decision(action, message="OK.", **fields):
    return OrchestratorDecision(action=action, message=message, **fields)


# ------------------------------------------------------------------ #
# Business hours
# ------------------------------------------------------------------ #


class TestBusinessHours:

    def test_closed_day(self):
        assert not call_flow.is_within_business_hours(make_business(open_hours=False), FIXED_NOW)

    def test_inside_window(self):
        business = make_business()
        business.business_hours["monday"] = DayHours(open="09:00", close="17:00", is_open=True)
        assert call_flow.is_within_business_hours(business, FIXED_NOW)

    def test_outside_window(self):
        business = make_business()
        business.business_hours["monday"] = DayHours(open="09:00", close="12:00", is_open=True)
        assert not call_flow.is_within_business_hours(business, FIXED_NOW)

    def test_uses_business_time_zone(self):
        business = make_business()
        business.time_zone = "America/New_York"
        # 15:00 UTC is 10:00 in New York
        business.business_hours["monday"] = DayHours(open="09:00", close="11:00", is_open=True)
        assert call_flow.is_within_business_hours(business, FIXED_NOW)

    def test_overnight_window(self):
        business = make_business()
        business.business_hours["monday"] = DayHours(open="22:00", close="02:00", is_open=True)
        late = datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc)
        assert call_flow.is_within_business_hours(business, late)
        assert not call_flow.is_within_business_hours(business, FIXED_NOW)


# ------------------------------------------------------------------ #
# Incoming call
# ------------------------------------------------------------------ #


class TestIncomingCall:

    def test_open_greets_and_gathers(self):
        transition = call_flow.on_incoming_call(make_business(greeting="Hi there!"), FIXED_NOW)
        assert transition.state == FlowState.IN_CONVERSATION
        assert transition.steps[0] == Say("Hi there!")
        assert isinstance(transition.steps[1], Gather)
        assert transition.steps[1].action == call_flow.SPEECH_URL
        assert transition.updates["status"] == CallStatus.ANSWERED
        assert transition.event == EventType.INCOMING_CALL

    def test_closed_goes_straight_to_voicemail(self):
        transition = call_flow.on_incoming_call(make_business(open_hours=False), FIXED_NOW)
        assert transition.state == FlowState.RECORDING_VOICEMAIL
        assert not any(isinstance(step, Gather) for step in transition.steps)
        assert isinstance(transition.steps[-1], Record)
        assert transition.steps[0].text.startswith(call_flow.CLOSED_PREFIX)
        assert transition.updates["handled_by"] == HandledBy.VOICEMAIL


# ------------------------------------------------------------------ #
# Decisions
# ------------------------------------------------------------------ #


class TestOnDecision:

    def test_transfer_dials_forwarding_number(self):
        transition = call_flow.on_decision(make_call(), make_business(), make_decision(DecisionAction.TRANSFER))
        assert transition.state == FlowState.TRANSFERRING
        assert Dial(FORWARDING_NUMBER) in transition.steps
        assert transition.updates["handled_by"] == HandledBy.HUMAN
        assert transition.updates["transferred_to"] == FORWARDING_NUMBER

    def test_transfer_without_forwarding_goes_to_voicemail(self):
        business = make_business(forwarding_number=None)
        transition = call_flow.on_decision(make_call(), business, make_decision(DecisionAction.TRANSFER))
        assert transition.state == FlowState.RECORDING_VOICEMAIL
        assert transition.steps[-1] == Redirect(call_flow.VOICEMAIL_URL)
        assert "handled_by" not in transition.updates

    def test_transfer_reason_from_intent(self):
        info = ExtractedInfo(intent="billing_dispute")
        transition = call_flow.on_decision(make_call(), make_business(), make_decision(DecisionAction.TRANSFER, extracted_info=info))
        assert transition.updates["transfer_reason"] == "billing_dispute"

    def test_appointment_enters_sub_flow(self):
        transition = call_flow.on_decision(make_call(), make_business(), make_decision(DecisionAction.APPOINTMENT))
        assert transition.state == FlowState.APPOINTMENT
        assert transition.steps[-1] == Redirect(call_flow.APPOINTMENT_URL)

    def test_appointment_disabled_becomes_transfer(self):
        business = make_business(appointment_booking=False)
        transition = call_flow.on_decision(make_call(), business, make_decision(DecisionAction.APPOINTMENT))
        assert transition.state == FlowState.TRANSFERRING

    def test_information_regathers_then_ends(self):
        transition = call_flow.on_decision(make_call(), make_business(), make_decision(DecisionAction.INFORMATION, "We open at 9."))
        assert transition.state == FlowState.IN_CONVERSATION
        assert transition.steps[0] == Say("We open at 9.")
        assert isinstance(transition.steps[1], Gather)
        assert transition.steps[-1] == Hangup()

    def test_end_and_voicemail_hang_up(self):
        for action in (DecisionAction.END, DecisionAction.VOICEMAIL):
            transition = call_flow.on_decision(make_call(), make_business(), make_decision(action, "Bye."))
            assert transition.state == FlowState.ENDING
            assert transition.steps == [Say("Bye."), Hangup()]

    def test_decision_for_terminal_call_discarded(self):
        call = make_call(status=CallStatus.COMPLETED, flow_state=FlowState.COMPLETED)
        transition = call_flow.on_decision(call, make_business(), make_decision(DecisionAction.TRANSFER))
        assert transition.discarded
        assert transition.steps == []
        assert transition.updates == {}


class TestOrchestratorFailure:

    def test_dials_with_apology_and_keeps_ai(self):
        transition = call_flow.on_orchestrator_failure(make_call(), make_business())
        assert transition.steps == [Say(call_flow.FALLBACK_MESSAGE), Dial(FORWARDING_NUMBER)]
        assert "handled_by" not in transition.updates
        assert transition.updates["transfer_reason"] == "orchestrator_unavailable"

    def test_voicemail_when_no_forwarding(self):
        transition = call_flow.on_orchestrator_failure(make_call(), make_business(forwarding_number=None))
        assert transition.steps == [Say(call_flow.FALLBACK_MESSAGE), Redirect(call_flow.VOICEMAIL_URL)]

    def test_unknown_business_records_message(self):
        transition = call_flow.fallback_transfer_or_voicemail(None)
        assert isinstance(transition.steps[0], Say)
        assert isinstance(transition.steps[-1], Record)


# ------------------------------------------------------------------ #
# Appointment sub-flow
# ------------------------------------------------------------------ #


class TestAppointment:

    def test_prompt_gathers_speech_or_digits(self):
        transition = call_flow.on_appointment_prompt(make_call(flow_state=FlowState.APPOINTMENT))
        gather = transition.steps[1]
        assert isinstance(gather, Gather)
        assert gather.action == call_flow.APPOINTMENT_URL
        assert gather.input == "speech dtmf"

    def test_valid_time_confirms(self):
        start = datetime(2025, 1, 7, 10, 0, tzinfo=timezone.utc)
        transition = call_flow.on_appointment_decision(
            make_call(), make_business(), make_decision(DecisionAction.APPOINTMENT, appointment_time=start),
        )
        assert transition.appointment_start == start
        assert transition.event == EventType.APPOINTMENT_BOOKED
        assert "Tuesday, January 7 at 10:00 AM" in transition.steps[0].text
        assert transition.steps[-1] == Hangup()

    def test_naive_time_localized_to_business(self):
        business = make_business()
        business.time_zone = "America/Chicago"
        transition = call_flow.on_appointment_decision(
            make_call(), business, make_decision(DecisionAction.APPOINTMENT, appointment_time=datetime(2025, 1, 7, 14, 30)),
        )
        assert transition.appointment_start.utcoffset() == timedelta(hours=-6)

    def test_missing_time_transfers(self):
        transition = call_flow.on_appointment_decision(make_call(), make_business(), make_decision(DecisionAction.APPOINTMENT))
        assert transition.steps[0] == Say(call_flow.APPOINTMENT_FAILED_MESSAGE)
        assert Dial(FORWARDING_NUMBER) in transition.steps
        assert transition.appointment_start is None


# ------------------------------------------------------------------ #
# Recording and status
# ------------------------------------------------------------------ #


class TestRecording:

    def test_stores_reference_and_marks_voicemail(self):
        transition = call_flow.on_recording(make_call(), "https://api.twilio.com/rec/RE1", 42)
        assert transition.updates["recording_url"] == "https://api.twilio.com/rec/RE1"
        assert transition.updates["recording_duration"] == 42
        assert transition.updates["handled_by"] == HandledBy.VOICEMAIL
        assert transition.event == EventType.VOICEMAIL_RECEIVED

    def test_repeat_recording_discarded(self):
        call = make_call(recording_url="https://api.twilio.com/rec/RE1")
        transition = call_flow.on_recording(call, "https://api.twilio.com/rec/RE1", 42)
        assert transition.discarded
        assert transition.steps[-1] == Hangup()


class TestOnStatus:

    def test_terminal_stamps_end_and_duration(self):
        later = FIXED_NOW + timedelta(seconds=95)
        transition = call_flow.on_status(make_call(), CallStatus.COMPLETED, None, later)
        assert transition.updates["end_time"] == later
        assert transition.updates["duration"] == 95
        assert transition.completes_interaction

    def test_provider_duration_preferred(self):
        transition = call_flow.on_status(make_call(), CallStatus.COMPLETED, 30, FIXED_NOW)
        assert transition.updates["duration"] == 30

    def test_never_regresses(self):
        call = make_call(status=CallStatus.COMPLETED)
        assert call_flow.on_status(call, CallStatus.RINGING, None, FIXED_NOW).discarded
        assert call_flow.on_status(call, CallStatus.FAILED, None, FIXED_NOW).discarded

    def test_late_ringing_ignored(self):
        assert call_flow.on_status(make_call(), CallStatus.RINGING, None, FIXED_NOW).discarded

    def test_forward_non_terminal_moves_status_only(self):
        call = make_call(status=CallStatus.QUEUED, flow_state=FlowState.RINGING)
        transition = call_flow.on_status(call, CallStatus.RINGING, None, FIXED_NOW)
        assert transition.updates == {"status": CallStatus.RINGING}
        assert not transition.completes_interaction


# ------------------------------------------------------------------ #
# Rendering
# ------------------------------------------------------------------ #


class TestRenderVoice:

    def test_renders_each_step(self):
        xml = render_voice([
            Say("Hello"),
            Gather(action="/api/twilio/voice/speech", prompt="Go ahead"),
            Dial("+15559998888"),
            Record(action="/api/twilio/voice/recording"),
            Redirect("/api/twilio/voice/voicemail"),
            Hangup(),
        ])
        assert "<Say" in xml and "Hello</Say>" in xml
        assert 'action="/api/twilio/voice/speech"' in xml
        assert 'input="speech"' in xml
        assert "<Dial>+15559998888</Dial>" in xml
        assert 'maxLength="300"' in xml
        assert "<Redirect" in xml
        assert "<Hangup />" in xml

    def test_voice_settings_applied(self):
        business = make_business(voice="Polly.Joanna", language="en-GB")
        xml = render_voice([Say("Hi")], business.ai_settings)
        assert 'voice="Polly.Joanna"' in xml
        assert 'language="en-GB"' in xml

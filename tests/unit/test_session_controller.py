"""Unit tests for the per-call session controller."""
import asyncio
import pytest

from app.services.session.phases import SessionPhase, VoiceProfile
from conftest import (
    FakeModelLeg,
    assistant_item_event,
    start_frame,
    transcript_event,
)

ALL_TOPICS = {
    "past_medical_history": "type 2 diabetes",
    "medications": ["metformin"],
    "allergies": "penicillin",
}


async def settle(controller):
    """Wait until background work, including work it spawns, has finished."""
    for _ in range(10):
        if not controller.tasks.pending:
            return
        await controller.tasks.drain(timeout=2)


async def greeted(controller):
    """Bring a controller to the point where the greeting has been spoken."""
    await controller.handle_model_event({"type": "session.updated"})
    await controller.handle_telephony_frame(start_frame())


def appended_messages(mock_store):
    return [c.args for c in mock_store.append_message.await_args_list]


class TestStreamStart:
    """Test conversation id handling on stream start."""

    @pytest.mark.asyncio
    async def test_start_parameter_preferred_over_query(self, make_controller, mock_store):
        controller = make_controller(conversation_ref="from-query")

        await controller.handle_telephony_frame(start_frame(conversation_id="from-start"))

        assert controller.session.conversation_ref == "from-start"
        assert controller.session.stream_sid == "MZ123"
        assert controller.session.call_sid == "CA123"
        mock_store.resolve_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_placeholder_start_parameter_falls_back_to_query(self, make_controller):
        controller = make_controller(conversation_ref="from-query")

        await controller.handle_telephony_frame(start_frame(conversation_id="null"))

        assert controller.session.conversation_ref == "from-query"

    @pytest.mark.asyncio
    async def test_missing_ids_resolved_from_call_sid(self, make_controller, mock_store):
        controller = make_controller(conversation_ref="undefined")

        await controller.handle_telephony_frame(start_frame())
        await settle(controller)

        mock_store.resolve_conversation.assert_awaited_once_with("CA123")
        assert controller.session.conversation_ref == "conv-from-callsid"

    @pytest.mark.asyncio
    async def test_call_sid_lookup_does_not_block_dialogue(self, make_controller, model, mock_store, test_protocol):
        release = asyncio.Event()

        async def slow_lookup(call_sid):
            await release.wait()
            return "conv-from-callsid"

        mock_store.resolve_conversation.side_effect = slow_lookup
        controller = make_controller(conversation_ref=None)

        await asyncio.wait_for(controller.handle_telephony_frame(start_frame()), timeout=1)
        await asyncio.wait_for(controller.handle_model_event({"type": "session.updated"}), timeout=1)

        assert model.spoken() == [test_protocol.greeting]
        mock_store.append_message.assert_not_awaited()

        release.set()
        await settle(controller)

        assert appended_messages(mock_store)[0][:3] == (
            "conv-from-callsid", "assistant", test_protocol.greeting
        )

    @pytest.mark.asyncio
    async def test_failed_lookup_skips_persistence(self, make_controller, mock_store):
        mock_store.resolve_conversation.side_effect = RuntimeError("database unavailable")
        controller = make_controller(conversation_ref=None)

        await greeted(controller)
        await settle(controller)

        assert controller.session.conversation_ref is None
        mock_store.append_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_event_ends_relay(self, make_controller):
        controller = make_controller()

        assert await controller.handle_telephony_frame({"event": "stop"}) is False
        assert await controller.handle_telephony_frame({"event": "dtmf"}) is True


class TestGreeting:
    """Test the opening line."""

    @pytest.mark.asyncio
    async def test_greeting_waits_for_both_preconditions(self, make_controller, model, test_protocol):
        controller = make_controller()

        await controller.handle_telephony_frame(start_frame())
        assert model.spoken() == []

        await controller.handle_model_event({"type": "session.updated"})
        assert model.spoken() == [test_protocol.greeting]
        assert controller.session.phase == SessionPhase.GREETED

    @pytest.mark.asyncio
    async def test_greeting_sent_once(self, make_controller, model, test_protocol):
        controller = make_controller()

        await greeted(controller)
        await controller.handle_model_event({"type": "session.updated"})
        await controller._on_greeting_fallback()
        await asyncio.sleep(0.1)

        assert model.spoken() == [test_protocol.greeting]

    @pytest.mark.asyncio
    async def test_fallback_greets_when_session_update_stalls(self, make_controller, model, test_protocol):
        controller = make_controller()

        await controller.handle_telephony_frame(start_frame())
        await asyncio.sleep(0.1)

        assert model.spoken() == [test_protocol.greeting]

        # A late session.updated must not greet again
        await controller.handle_model_event({"type": "session.updated"})
        assert model.spoken() == [test_protocol.greeting]

    @pytest.mark.asyncio
    async def test_no_greeting_while_model_closed(self, telephony, make_controller):
        model = FakeModelLeg(is_open=False)
        controller = make_controller(model=model)

        await controller.handle_model_event({"type": "session.updated"})
        await controller.handle_telephony_frame(start_frame())
        await controller._on_greeting_fallback()

        assert model.spoken() == []
        assert controller.session.phase == SessionPhase.STREAM_STARTING

    @pytest.mark.asyncio
    async def test_greeting_echo_not_logged_twice(self, make_controller, mock_store, test_protocol):
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event(assistant_item_event(test_protocol.greeting))
        await settle(controller)

        assistant_lines = [args for args in appended_messages(mock_store) if args[1] == "assistant"]
        assert assistant_lines == [("conv-1", "assistant", test_protocol.greeting, {"phase": "greeted", "source": "greeting"})]

    @pytest.mark.asyncio
    async def test_paraphrased_scripted_response_not_logged(self, make_controller, mock_store, test_protocol):
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event({
            "type": "response.created",
            "response": {"id": "resp_1", "metadata": {"source": "scripted"}},
        })
        await controller.handle_model_event({
            "type": "response.output_item.added",
            "response_id": "resp_1",
            "item": {"id": "item_g", "type": "message", "role": "assistant", "content": []},
        })
        await controller.handle_model_event(
            assistant_item_event("Hi, this is the Test Clinic intake line. Shall we begin?", item_id="item_g")
        )
        await settle(controller)

        assistant_lines = [args[2] for args in appended_messages(mock_store) if args[1] == "assistant"]
        assert assistant_lines == [test_protocol.greeting]

    @pytest.mark.asyncio
    async def test_scripted_response_id_on_done_event(self, make_controller, mock_store, test_protocol):
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event({
            "type": "response.created",
            "response": {"id": "resp_1", "metadata": {"source": "scripted"}},
        })
        event = assistant_item_event("Hello from Test Clinic, can we get started?", item_id="item_g")
        event["response_id"] = "resp_1"
        await controller.handle_model_event(event)
        await settle(controller)

        assistant_lines = [args[2] for args in appended_messages(mock_store) if args[1] == "assistant"]
        assert assistant_lines == [test_protocol.greeting]

    @pytest.mark.asyncio
    async def test_untagged_response_is_logged(self, make_controller, mock_store):
        controller = make_controller()

        await controller.handle_model_event({"type": "response.created", "response": {"id": "resp_2"}})
        event = assistant_item_event("What brings you in today?", item_id="item_q")
        event["response_id"] = "resp_2"
        await controller.handle_model_event(event)
        await settle(controller)

        assert [args[2] for args in appended_messages(mock_store)] == ["What brings you in today?"]

    @pytest.mark.asyncio
    async def test_response_done_moves_to_awaiting_consent(self, make_controller):
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event({"type": "response.done"})

        assert controller.session.phase == SessionPhase.AWAITING_CONSENT


class TestAudioRelay:
    """Test audio forwarding between legs."""

    @pytest.mark.asyncio
    async def test_audio_dropped_before_model_open(self, make_controller):
        model = FakeModelLeg(is_open=False)
        controller = make_controller(model=model)
        media = {"event": "media", "media": {"payload": "early"}}

        assert await controller.handle_telephony_frame(media) is True
        assert model.calls == []

        await model.connect()
        await controller.handle_telephony_frame({"event": "media", "media": {"payload": "late"}})

        assert model.calls == [("append_audio", "late")]

    @pytest.mark.asyncio
    async def test_model_audio_sent_to_caller(self, make_controller, telephony):
        controller = make_controller()
        await controller.handle_telephony_frame(start_frame(stream_sid="MZ999"))

        await controller.handle_model_event({"type": "response.audio.delta", "delta": "AAAA"})

        assert {"event": "media", "streamSid": "MZ999", "media": {"payload": "AAAA"}} in telephony.sent

    @pytest.mark.asyncio
    async def test_barge_in_clears_playback(self, make_controller, telephony):
        controller = make_controller()
        await controller.handle_telephony_frame(start_frame(stream_sid="MZ999"))

        await controller.handle_model_event({"type": "input_audio_buffer.speech_started"})

        assert telephony.sent[-1] == {"event": "clear", "streamSid": "MZ999"}


class TestAssistantTurns:
    """Test logging and correction of assistant utterances."""

    @pytest.mark.asyncio
    async def test_single_question_logged_as_is(self, make_controller, model, mock_store):
        controller = make_controller()

        await controller.handle_model_event(
            assistant_item_event("Thanks. ", "Do you take any medications?", item_id="item_1")
        )
        await settle(controller)

        assert "cancel_response" not in model.names()
        args = appended_messages(mock_store)
        assert len(args) == 1
        assert args[0][1:3] == ("assistant", "Thanks. Do you take any medications?")

    @pytest.mark.asyncio
    async def test_multi_question_cancelled_then_corrected(self, make_controller, model, mock_store):
        controller = make_controller()

        await controller.handle_model_event(
            assistant_item_event("Do you take any medications? Any allergies?", item_id="item_2")
        )
        await settle(controller)

        names = model.names()
        assert names.index("cancel_response") < names.index("speak")
        assert model.spoken() == ["Do you take any medications?"]
        args = appended_messages(mock_store)
        assert len(args) == 1
        assert args[0][2] == "Do you take any medications?"
        assert args[0][3]["source"] == "turn_enforcer"
        assert args[0][3]["original_text"] == "Do you take any medications? Any allergies?"

    @pytest.mark.asyncio
    async def test_corrected_rendition_not_logged_again(self, make_controller, model, mock_store):
        controller = make_controller()

        await controller.handle_model_event(
            assistant_item_event("Do you take any medications? Any allergies?", item_id="item_3")
        )
        await controller.handle_model_event(
            assistant_item_event("Do you take any medications?", item_id="item_4")
        )
        await settle(controller)

        assert len(appended_messages(mock_store)) == 1

    @pytest.mark.asyncio
    async def test_same_item_logged_once(self, make_controller, mock_store):
        controller = make_controller()

        await controller.handle_model_event(
            assistant_item_event("How are you feeling?", item_id="item_5", event_type="conversation.item.created")
        )
        await controller.handle_model_event(assistant_item_event("How are you feeling?", item_id="item_5"))
        await settle(controller)

        assert len(appended_messages(mock_store)) == 1

    @pytest.mark.asyncio
    async def test_empty_item_skipped(self, make_controller, mock_store):
        controller = make_controller()

        await controller.handle_model_event(
            assistant_item_event(item_id="item_6", event_type="conversation.item.created")
        )
        await controller.handle_model_event(assistant_item_event("What brings you in?", item_id="item_6"))
        await settle(controller)

        args = appended_messages(mock_store)
        assert [a[2] for a in args] == ["What brings you in?"]


class TestCallerTurns:
    """Test handling of caller transcripts."""

    @pytest.mark.asyncio
    async def test_first_transcript_enters_intake(self, make_controller, mock_store, test_settings):
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event(transcript_event("Yes, that's fine."))
        await settle(controller)

        assert controller.session.phase == SessionPhase.INTAKE_ACTIVE
        assert controller.session.voice_profile == VoiceProfile.QUESTION
        caller_lines = [a for a in appended_messages(mock_store) if a[1] == "caller"]
        assert caller_lines[0][2] == "Yes, that's fine."

    @pytest.mark.asyncio
    async def test_extraction_uses_previous_question(self, make_controller, mock_extractor):
        controller = make_controller()
        await controller.handle_model_event(assistant_item_event("Do you have any allergies?", item_id="item_7"))

        await controller.handle_model_event(transcript_event("Penicillin."))
        await settle(controller)

        exchange = mock_extractor.extract_fields.await_args.args[0]
        assert exchange == "Assistant: Do you have any allergies?\nPatient: Penicillin."

    @pytest.mark.asyncio
    async def test_extracted_fields_update_coverage_and_store(self, make_controller, mock_extractor, mock_store):
        mock_extractor.extract_fields.return_value = {"allergies": "penicillin"}
        controller = make_controller()

        await controller.handle_model_event(transcript_event("I'm allergic to penicillin."))
        await settle(controller)

        assert controller.session.coverage.is_covered("allergies")
        assert controller.session.clinical_data == {"allergies": "penicillin"}
        mock_store.merge_clinical_fields.assert_awaited_once_with("conv-1", {"allergies": "penicillin"})

    @pytest.mark.asyncio
    async def test_extraction_failure_does_not_break_call(self, make_controller, mock_extractor, model):
        mock_extractor.extract_fields.side_effect = RuntimeError("extraction backend down")
        controller = make_controller()

        await controller.handle_model_event(transcript_event("I have asthma."))
        await settle(controller)

        assert controller.session.phase == SessionPhase.INTAKE_ACTIVE
        assert controller.session.clinical_data == {}

        await controller.handle_telephony_frame({"event": "media", "media": {"payload": "still-flowing"}})
        assert ("append_audio", "still-flowing") in model.calls

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_call(self, make_controller, mock_store):
        mock_store.append_message.side_effect = RuntimeError("database unavailable")
        controller = make_controller()

        await controller.handle_model_event(transcript_event("I have asthma."))
        await settle(controller)

        assert controller.session.transcript[-1].text == "I have asthma."

    @pytest.mark.asyncio
    async def test_specialty_guidance_activated(self, make_controller, model, mock_extractor):
        controller = make_controller()

        await controller.handle_model_event(transcript_event("I've been having seizures lately."))
        await settle(controller)

        assert controller.session.active_specialties == ["epilepsy"]
        configs = [arg for name, arg in model.calls if name == "configure_session"]
        assert "EPILEPSY-SPECIFIC INTAKE GUIDANCE:" in configs[-1].instructions
        extra_fields = mock_extractor.extract_fields.await_args.args[1]
        assert "seizure_frequency" in extra_fields

    @pytest.mark.asyncio
    async def test_intake_switches_to_question_voice(self, make_controller, model, test_settings):
        config = test_settings.model_copy(update={"voice_intro": "alloy", "voice_question": "shimmer"})
        controller = make_controller(config=config)
        await greeted(controller)

        await controller.handle_model_event(transcript_event("Yes, go ahead."))
        await settle(controller)

        assert model.calls.count(("update_voice", "shimmer")) == 1

    @pytest.mark.asyncio
    async def test_same_voices_send_no_update(self, make_controller, model):
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event(transcript_event("Yes, go ahead."))
        await settle(controller)

        assert "update_voice" not in model.names()

    @pytest.mark.asyncio
    async def test_specialty_reconfigure_keeps_question_voice(self, make_controller, model, test_settings):
        config = test_settings.model_copy(update={"voice_intro": "alloy", "voice_question": "shimmer"})
        controller = make_controller(config=config)
        await greeted(controller)

        await controller.handle_model_event(transcript_event("I have had seizures since last year."))
        await settle(controller)

        names = model.names()
        assert names.index("update_voice") < names.index("configure_session")
        configs = [arg for name, arg in model.calls if name == "configure_session"]
        assert configs[-1].voice == "shimmer"
        assert "EPILEPSY-SPECIFIC INTAKE GUIDANCE:" in configs[-1].instructions


class TestClosingSequence:
    """Test the coverage-gated closing sequence end to end."""

    @pytest.mark.asyncio
    async def test_goodbye_with_missing_topics(self, make_controller, model, mock_store):
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event(transcript_event("I have a headache.", item_id="c1"))
        await controller.handle_model_event(transcript_event("I'm having trouble, goodbye.", item_id="c2"))
        await settle(controller)

        follow_up = model.spoken()[-1]
        assert "any past medical conditions or surgeries" in follow_up
        assert "any medications you currently take" in follow_up
        assert "any allergies you have" in follow_up
        assert follow_up.count("?") == 1
        names = model.names()
        assert names[-2:] == ["cancel_response", "speak"]
        assert controller.session.phase == SessionPhase.INTAKE_ACTIVE
        assert not controller.session.pending_close
        mock_store.mark_completed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_full_coverage_summary_then_confirmation(
        self, make_controller, model, telephony, mock_store, mock_extractor, test_protocol
    ):
        mock_extractor.extract_fields.return_value = dict(ALL_TOPICS)
        controller = make_controller()
        await greeted(controller)

        await controller.handle_model_event(transcript_event(
            "I have diabetes, I take metformin and I'm allergic to penicillin.", item_id="c1"
        ))
        await settle(controller)
        assert controller.session.coverage.is_complete()

        await controller.handle_model_event(transcript_event("That's all, bye.", item_id="c2"))
        assert controller.session.phase == SessionPhase.CLOSE_REQUESTED
        assert controller.session.pending_close
        await settle(controller)

        summary_line = model.spoken()[-1]
        assert summary_line.endswith(test_protocol.closing_question)
        assert summary_line.count("?") == 1
        mock_extractor.summarize.assert_awaited_once()

        await controller.handle_model_event(transcript_event("No, that's it.", item_id="c3"))
        await settle(controller)

        assert controller.session.phase == SessionPhase.CLOSED
        assert model.spoken()[-1] == test_protocol.farewell
        mock_store.mark_completed.assert_awaited_once_with(
            "conv-1", "You mentioned headaches and that you take metformin"
        )
        assert telephony.close_calls == 1
        assert model.close_calls == 1

    @pytest.mark.asyncio
    async def test_repeated_goodbye_while_pending(self, make_controller, model, mock_store, mock_extractor):
        mock_extractor.extract_fields.return_value = dict(ALL_TOPICS)
        controller = make_controller()
        await controller.handle_model_event(transcript_event("Diabetes, metformin, penicillin.", item_id="c1"))
        await settle(controller)

        await controller.handle_model_event(transcript_event("Okay I'm done.", item_id="c2"))
        await settle(controller)
        await controller.handle_model_event(transcript_event("I have to go.", item_id="c3"))
        await settle(controller)

        mock_extractor.summarize.assert_awaited_once()
        assert controller.session.phase == SessionPhase.CLOSE_REQUESTED
        mock_store.mark_completed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_new_information_while_pending_keeps_call_open(
        self, make_controller, model, telephony, mock_store, mock_extractor
    ):
        mock_extractor.extract_fields.return_value = dict(ALL_TOPICS)
        controller = make_controller()
        await controller.handle_model_event(transcript_event("Diabetes, metformin, penicillin.", item_id="c1"))
        await settle(controller)
        await controller.handle_model_event(transcript_event("That's everything, bye.", item_id="c2"))
        await settle(controller)

        await controller.handle_model_event(transcript_event("Actually I also get migraines.", item_id="c3"))
        await settle(controller)

        assert controller.session.phase == SessionPhase.CLOSE_REQUESTED
        assert controller.session.pending_close
        mock_store.mark_completed.assert_not_awaited()
        assert telephony.close_calls == 0

    @pytest.mark.asyncio
    async def test_goodbye_carrying_last_topic_requests_summary(
        self, make_controller, model, mock_extractor, test_protocol
    ):
        mock_extractor.extract_fields.return_value = {
            "past_medical_history": "type 2 diabetes",
            "medications": ["metformin"],
        }
        controller = make_controller()
        await greeted(controller)
        await controller.handle_model_event(transcript_event("Diabetes, and I take metformin.", item_id="c1"))
        await settle(controller)

        mock_extractor.extract_fields.return_value = {"allergies": "penicillin"}
        await controller.handle_model_event(transcript_event("I'm allergic to penicillin, bye.", item_id="c2"))
        await settle(controller)

        assert controller.session.phase == SessionPhase.CLOSE_REQUESTED
        assert not any(line.startswith("Before we wrap up") for line in model.spoken())
        mock_extractor.summarize.assert_awaited_once()
        assert model.spoken()[-1].endswith(test_protocol.closing_question)

    @pytest.mark.asyncio
    async def test_summary_failure_uses_fallback(self, make_controller, model, mock_extractor, test_protocol):
        mock_extractor.extract_fields.return_value = dict(ALL_TOPICS)
        mock_extractor.summarize.side_effect = RuntimeError("summary backend down")
        controller = make_controller()
        await controller.handle_model_event(transcript_event("Diabetes, metformin, penicillin.", item_id="c1"))
        await settle(controller)

        await controller.handle_model_event(transcript_event("That's all, goodbye.", item_id="c2"))
        await settle(controller)

        assert model.spoken()[-1].startswith(test_protocol.summary_fallback)


class TestLifecycle:
    """Test running and tearing down a call."""

    @pytest.mark.asyncio
    async def test_model_connect_failure_closes_caller(self, make_controller, telephony):
        model = FakeModelLeg(is_open=False, fail_connect=True)
        controller = make_controller(model=model)

        await asyncio.wait_for(controller.run(), timeout=2)

        assert controller.session.phase == SessionPhase.ERROR
        assert telephony.close_calls == 1

    @pytest.mark.asyncio
    async def test_caller_hangup_closes_model(self, make_controller, telephony, model):
        controller = make_controller()
        run = asyncio.create_task(controller.run())

        telephony.push(start_frame())
        telephony.push({"event": "media", "media": {"payload": "AAAA"}})
        await asyncio.sleep(0.01)
        telephony.disconnect()
        await asyncio.wait_for(run, timeout=2)

        assert model.close_calls == 1
        assert telephony.close_calls == 1
        assert controller.session.phase == SessionPhase.CLOSED
        assert ("append_audio", "AAAA") in model.calls
        assert model.names()[0] == "configure_session"

    @pytest.mark.asyncio
    async def test_model_disconnect_closes_caller(self, make_controller, telephony, model):
        controller = make_controller()
        run = asyncio.create_task(controller.run())

        telephony.push(start_frame())
        await asyncio.sleep(0.01)
        model.push(None)
        await asyncio.wait_for(run, timeout=2)

        assert telephony.close_calls == 1
        assert model.close_calls == 1
        assert controller.session.phase == SessionPhase.CLOSED

    @pytest.mark.asyncio
    async def test_model_connection_lost_ends_in_error(self, make_controller, telephony, model):
        controller = make_controller()
        run = asyncio.create_task(controller.run())

        telephony.push(start_frame())
        await asyncio.sleep(0.01)
        model.close_error = ConnectionError("socket dropped")
        model.push(None)
        await asyncio.wait_for(run, timeout=2)

        assert telephony.close_calls == 1
        assert controller.session.phase == SessionPhase.ERROR

    @pytest.mark.asyncio
    async def test_telephony_relay_failure_ends_in_error(self, make_controller, telephony, model, caplog):
        controller = make_controller()
        run = asyncio.create_task(controller.run())

        telephony.push(start_frame())
        telephony.fail(ConnectionResetError("stream reset"))
        await asyncio.wait_for(run, timeout=2)

        assert controller.session.phase == SessionPhase.ERROR
        assert model.close_calls == 1
        assert telephony.close_calls == 1
        assert "Relay failed" in caplog.text
        assert "stream reset" in caplog.text

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, make_controller, telephony, model):
        controller = make_controller()

        await controller.shutdown("caller disconnected")
        await controller.shutdown("caller disconnected")

        assert telephony.close_calls == 1
        assert model.close_calls == 1

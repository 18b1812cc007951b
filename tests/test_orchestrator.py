from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from conftest import NOW, RecordingGateway, build_graph, make_conversation
from nodepath.schemas.webhook import InboundMessage
from nodepath.services import orchestrator as orchestrator_module
from nodepath.services.delivery_service import UnsupportedProviderError
from nodepath.services.flow_engine import FlowStateMachine, PassOutcome
from nodepath.services.flow_graph import FlowDefinitionError
from nodepath.services.orchestrator import ConversationOrchestrator, PassStatus, is_throttled
from nodepath.services.result import ErrorCode, Result
from nodepath.services.session_lock import InMemorySessionLock

DEVICE = SimpleNamespace(device_id="DEV-1", instance="inst-1", provider="wablas", api_key="", api_key_option="m")
PHONE = "628123456789"


def _graph():
    return build_graph(
        [
            ("s", "start", None),
            ("m1", "message", {"message": "Hai {{name}}"}),
            ("u", "user_reply", None),
            ("d", "delay", {"delay": 5}),
            ("m2", "message", {"message": "Sudah lewat 5 detik"}),
        ],
        [("s", "m1"), ("m1", "u"), ("u", "d"), ("d", "m2")],
    )


def _inbound(text="halo", phone=PHONE, from_me=False, sender_name="Ani"):
    return InboundMessage(device_id="DEV-1", instance="inst-1", phone_number=phone, text=text, sender_name=sender_name, from_me=from_me)


class FakeStore:
    """Replaces the conversation store lookups used by the orchestrator."""

    def __init__(self, monkeypatch):
        self.device = DEVICE
        self.flow = SimpleNamespace(id="flow-1", nodes=[], edges=[])
        self.graph = _graph()
        self.conversation = None
        self.created = []
        self.human_calls = []
        monkeypatch.setattr(orchestrator_module, "get_device_settings", lambda db, device_id: self.device)
        monkeypatch.setattr(orchestrator_module, "find_conversation", lambda db, phone, device_id: self.conversation)
        monkeypatch.setattr(orchestrator_module, "get_flow", lambda db, device_id, flow_id=None: self.flow)
        monkeypatch.setattr(orchestrator_module, "load_graph", self._load_graph)
        monkeypatch.setattr(orchestrator_module, "get_or_create_conversation", self._create)
        monkeypatch.setattr(orchestrator_module, "set_human_override", self._set_human)

    def _load_graph(self, flow, default_delay_seconds=5):
        if isinstance(self.graph, Exception):
            raise self.graph
        return self.graph

    def _create(self, db, phone_number, device_id, graph, prospect_name=None):
        self.conversation = make_conversation(
            phone_number=phone_number, device_id=device_id, current_node_id=graph.start_node_id, prospect_name=prospect_name
        )
        self.created.append(self.conversation)
        return self.conversation

    def _set_human(self, db, phone_number, device_id, enabled):
        self.human_calls.append((phone_number, device_id, enabled))
        if self.conversation is None:
            return None
        self.conversation.human = 1 if enabled else 0
        return self.conversation


@pytest.fixture
def store(monkeypatch):
    return FakeStore(monkeypatch)


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def lock():
    return InMemorySessionLock()


@pytest.fixture
def gateways():
    created = []

    def factory(device, provider_override=None):
        gateway = RecordingGateway()
        gateway.provider_override = provider_override
        created.append(gateway)
        return gateway

    factory.created = created
    return factory


@pytest.fixture
def scheduler():
    return Mock()


@pytest.fixture
def orchestrator(session, lock, gateways, scheduler):
    completion = Mock()
    completion.generate_and_dispatch.return_value = Result.success(None)
    engine = FlowStateMachine(completion=completion, scheduler=scheduler, max_steps=20)
    return ConversationOrchestrator(
        session_factory=lambda: session,
        lock=lock,
        engine=engine,
        gateway_factory=gateways,
        clock=lambda: NOW,
    )


class TestInboundPass:
    def test_new_conversation_runs_from_start(self, orchestrator, store, session, lock, gateways):
        report = orchestrator.handle_inbound(_inbound())

        assert report.status is PassStatus.PROCESSED
        assert report.outcome is PassOutcome.SUSPENDED
        assert len(store.created) == 1
        conversation = store.conversation
        assert conversation.current_node_id == "u"
        assert conversation.waiting_for_reply is True
        assert conversation.conv_current == "halo"
        assert conversation.updated_at == NOW
        assert gateways.created[0].texts == ["Hai Ani"]
        session.commit.assert_called_once()
        session.close.assert_called_once()
        assert lock.is_held(PHONE, "DEV-1") is False

    def test_reply_reaches_delay_and_schedules(self, orchestrator, store, scheduler):
        store.conversation = make_conversation(current_node_id="u", waiting_for_reply=True)

        report = orchestrator.handle_inbound(_inbound("oke"))

        assert report.outcome is PassOutcome.SUSPENDED
        assert store.conversation.current_node_id == "d"
        assert scheduler.call_args.kwargs["node_id"] == "d"

    def test_media_only_message_uses_url_as_input(self, orchestrator, store):
        store.conversation = make_conversation(current_node_id="u", waiting_for_reply=True)
        message = InboundMessage(device_id="DEV-1", phone_number=PHONE, media_url="https://x.test/a.jpg")

        orchestrator.handle_inbound(message)

        assert store.conversation.conv_current == "https://x.test/a.jpg"

    def test_duplicate_rejected_without_touching_store(self, orchestrator, store, lock, gateways):
        session_factory = Mock()
        orchestrator.session_factory = session_factory
        lock.try_acquire(PHONE, "DEV-1")

        report = orchestrator.handle_inbound(_inbound())

        assert report.status is PassStatus.DUPLICATE
        assert report.error_code == ErrorCode.LOCK_REJECTED
        session_factory.assert_not_called()
        assert gateways.created == []
        assert lock.is_held(PHONE, "DEV-1") is True

    def test_human_override_skips_automation(self, orchestrator, store, gateways):
        store.conversation = make_conversation(current_node_id="u", waiting_for_reply=True, human=1)

        report = orchestrator.handle_inbound(_inbound("oke"))

        assert report.status is PassStatus.HUMAN_OVERRIDE
        assert store.conversation.current_node_id == "u"
        assert store.conversation.conv_current is None
        assert gateways.created == []

    def test_throttled_message_dropped(self, orchestrator, store, gateways):
        store.conversation = make_conversation(
            current_node_id="u", waiting_for_reply=True, last_ai_call_at=NOW - timedelta(seconds=2)
        )

        report = orchestrator.handle_inbound(_inbound("oke"))

        assert report.status is PassStatus.THROTTLED
        assert store.conversation.current_node_id == "u"
        assert store.conversation.conv_current is None
        assert gateways.created == []

    def test_throttle_window_elapsed(self, orchestrator, store):
        store.conversation = make_conversation(
            current_node_id="u", waiting_for_reply=True, last_ai_call_at=NOW - timedelta(seconds=5)
        )

        report = orchestrator.handle_inbound(_inbound("oke"))

        assert report.status is PassStatus.PROCESSED

    def test_quick_reply_after_message_only_pass_is_processed(self, orchestrator, store, gateways):
        store.graph = build_graph(
            [("s", "start", None), ("m1", "message", {"message": "Hai {{name}}"}), ("u", "user_reply", None)],
            [("s", "m1"), ("m1", "u")],
        )
        clock = [NOW]
        orchestrator.clock = lambda: clock[0]

        first = orchestrator.handle_inbound(_inbound("halo"))
        clock[0] = NOW + timedelta(seconds=2)
        second = orchestrator.handle_inbound(_inbound("oke"))

        assert first.status is PassStatus.PROCESSED
        assert store.conversation.last_ai_call_at is None
        assert second.status is PassStatus.PROCESSED
        assert second.outcome is PassOutcome.COMPLETED
        assert store.conversation.conv_current == "oke"
        orchestrator.engine.completion.generate_and_dispatch.assert_not_called()

    def test_invalid_phone_ignored_before_lock(self, orchestrator, store, lock):
        lock.acquire = Mock()

        report = orchestrator.handle_inbound(_inbound(phone="62812345678901234"))

        assert report.status is PassStatus.IGNORED
        assert report.detail == "invalid_phone"
        lock.acquire.assert_not_called()

    def test_unknown_device_ignored(self, orchestrator, store):
        store.device = None

        report = orchestrator.handle_inbound(_inbound())

        assert report.status is PassStatus.IGNORED
        assert report.detail == "unknown_device"
        assert store.created == []

    def test_missing_flow_ignored(self, orchestrator, store):
        store.flow = None

        report = orchestrator.handle_inbound(_inbound())

        assert report.detail == "no_flow"


class TestErrorContainment:
    def test_engine_exception_rolls_back_and_releases(self, orchestrator, store, session, lock):
        orchestrator.engine = Mock()
        orchestrator.engine.process_current_node.side_effect = RuntimeError("db exploded")

        report = orchestrator.handle_inbound(_inbound())

        assert report.status is PassStatus.ERROR
        assert report.error_code == ErrorCode.INTERNAL_ERROR
        session.rollback.assert_called_once()
        session.commit.assert_not_called()
        session.close.assert_called_once()
        assert lock.is_held(PHONE, "DEV-1") is False

    def test_flow_definition_error(self, orchestrator, store, session):
        store.graph = FlowDefinitionError("Flow flow-1 must have exactly one start node, found 0")

        report = orchestrator.handle_inbound(_inbound())

        assert report.error_code == ErrorCode.FLOW_DEFINITION_ERROR
        session.rollback.assert_called_once()

    def test_unsupported_provider(self, orchestrator, store, session):
        orchestrator.gateway_factory = Mock(side_effect=UnsupportedProviderError("Unsupported provider: telegram"))

        report = orchestrator.handle_inbound(_inbound())

        assert report.error_code == ErrorCode.UNSUPPORTED_PROVIDER

    def test_engine_failure_still_commits_position(self, orchestrator, store, session):
        store.graph = build_graph(
            [("s", "start", None), ("c", "condition", {"conditions": [{"type": "equals", "value": "x"}]})],
            [("s", "c"), ("c", "s")],
        )

        report = orchestrator.handle_inbound(_inbound("nope"))

        assert report.status is PassStatus.PROCESSED
        assert report.error_code == ErrorCode.CONDITION_NO_MATCH
        assert store.conversation.execution_status == "failed"
        session.commit.assert_called_once()


class TestOperatorCommands:
    def test_own_message_without_command_ignored(self, orchestrator, store):
        report = orchestrator.handle_inbound(_inbound("oke siap kak", from_me=True))

        assert report.status is PassStatus.IGNORED
        assert report.detail == "own_message"

    def test_cmd_enables_human_override(self, orchestrator, store):
        store.conversation = make_conversation()

        report = orchestrator.handle_inbound(_inbound("cmd", from_me=True))

        assert report.status is PassStatus.COMMAND
        assert store.human_calls == [(PHONE, "DEV-1", True)]
        assert store.conversation.human == 1

    def test_dmc_disables_human_override(self, orchestrator, store):
        store.conversation = make_conversation(human=1)

        orchestrator.handle_inbound(_inbound("dmc", from_me=True))

        assert store.conversation.human == 0

    def test_slash_targets_other_phone(self, orchestrator, store):
        store.conversation = make_conversation(phone_number="628999")

        report = orchestrator.handle_inbound(_inbound("/628999", from_me=True))

        assert report.phone_number == "628999"
        assert store.human_calls == [("628999", "DEV-1", True)]

    def test_command_for_unknown_conversation(self, orchestrator, store):
        report = orchestrator.handle_inbound(_inbound("cmd", from_me=True))

        assert report.status is PassStatus.IGNORED
        assert report.detail == "unknown_conversation"

    def test_percent_continues_via_wablas(self, orchestrator, store, gateways):
        store.conversation = make_conversation(current_node_id="u", waiting_for_reply=True)

        report = orchestrator.handle_inbound(_inbound("%", from_me=True, sender_name="Operator"))

        assert report.status is PassStatus.PROCESSED
        assert gateways.created[0].provider_override == "wablas"
        assert store.conversation.conv_current == "Teruskan"
        assert store.conversation.prospect_name == "Sis"

    def test_hash_continues_other_phone_via_whacenter(self, orchestrator, store, gateways):
        report = orchestrator.handle_inbound(_inbound("#628555", from_me=True))

        assert report.phone_number == "628555"
        assert gateways.created[0].provider_override == "whacenter"
        assert store.created[0].phone_number == "628555"

    def test_hash_with_invalid_phone_ignored(self, orchestrator, store):
        report = orchestrator.handle_inbound(_inbound("#62812345678901234", from_me=True))

        assert report.status is PassStatus.IGNORED
        assert report.detail == "invalid_phone"


class TestContinuation:
    def _row(self, node_id="d"):
        return {"id": "c-1", "phone_number": PHONE, "device_id": "DEV-1", "node_id": node_id, "user_input": "oke", "attempts": 1}

    def test_resumes_parked_delay(self, orchestrator, store, gateways):
        store.conversation = make_conversation(current_node_id="d")

        report = orchestrator.resume_continuation(self._row())

        assert report.status is PassStatus.PROCESSED
        assert report.outcome is PassOutcome.COMPLETED
        assert gateways.created[0].texts == ["Sudah lewat 5 detik"]

    def test_stale_continuation_skipped(self, orchestrator, store, gateways):
        store.conversation = make_conversation(current_node_id="u")

        report = orchestrator.resume_continuation(self._row())

        assert report.status is PassStatus.IGNORED
        assert report.detail == "stale_continuation"
        assert gateways.created == []

    def test_human_override_blocks_continuation(self, orchestrator, store):
        store.conversation = make_conversation(current_node_id="d", human=1)

        report = orchestrator.resume_continuation(self._row())

        assert report.status is PassStatus.HUMAN_OVERRIDE

    def test_busy_lock_reported_as_duplicate(self, orchestrator, store, lock):
        store.conversation = make_conversation(current_node_id="d")
        lock.try_acquire(PHONE, "DEV-1")

        report = orchestrator.resume_continuation(self._row())

        assert report.status is PassStatus.DUPLICATE


class TestIsThrottled:
    def test_no_previous_call(self):
        assert is_throttled(None, NOW, 4) is False

    def test_within_interval(self):
        assert is_throttled(NOW - timedelta(seconds=3), NOW, 4) is True

    def test_after_interval(self):
        assert is_throttled(NOW - timedelta(seconds=4), NOW, 4) is False

    def test_naive_timestamp(self):
        assert is_throttled((NOW - timedelta(seconds=1)).replace(tzinfo=None), NOW, 4) is True

    def test_future_timestamp_not_throttled(self):
        assert is_throttled(NOW + timedelta(seconds=10), NOW, 4) is False

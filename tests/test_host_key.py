"""
Tests for the host key trust workflow.

Tests:
- check() results for TRUSTED, UNKNOWN, CHANGED
- Mismatch raises and emits host-key-mismatch without prompting
- Unseen key prompts, suspends, and resolves on trust / reject
- Concurrent attempts on one endpoint join a single prompt
- Abandoned attempts and shutdown drop the prompt
- Stale or duplicate decisions report HostKeyPromptNotFound
"""
from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import FailingKnownHostsBackend
from sshdeck.errors import HostKeyMismatch, HostKeyPromptNotFound, HostKeyRejected
from sshdeck.events import EventCollector, EventEmitter, EventType
from sshdeck.host_key import HostKeyResult, HostKeyTrustWorkflow
from sshdeck.known_hosts import KnownHostsStore, PresentedKey

KEY = PresentedKey("ssh-ed25519", "CC:DD", "AAAAC3NzaC1lZDI1NTE5AAAAIA==")
OTHER_KEY = PresentedKey("ssh-ed25519", "EE:FF", "AAAAC3NzaC1lZDI1NTE5AAAAIB==")


@pytest.fixture
def store() -> KnownHostsStore:
    return KnownHostsStore()


@pytest.fixture
def workflow(store: KnownHostsStore, emitter: EventEmitter) -> HostKeyTrustWorkflow:
    return HostKeyTrustWorkflow(store, emitter)


async def _until_pending(workflow: HostKeyTrustWorkflow, waiters: int = 1) -> None:
    for _ in range(100):
        pending = workflow.pending()
        if pending and pending[0].waiters >= waiters:
            return
        await asyncio.sleep(0)
    raise AssertionError("prompt never became pending")


class TestCheck:
    """Tests for the synchronous store comparison."""

    def test_unknown(self, workflow: HostKeyTrustWorkflow) -> None:
        assert workflow.check("10.0.0.5", 22, KEY) == HostKeyResult.UNKNOWN

    def test_trusted(self, workflow: HostKeyTrustWorkflow, store: KnownHostsStore) -> None:
        store.trust("10.0.0.5", 22, KEY.key_type, KEY.fingerprint, KEY.public_key_base64)
        assert workflow.check("10.0.0.5", 22, KEY) == HostKeyResult.TRUSTED

    def test_changed_fingerprint(self, workflow: HostKeyTrustWorkflow, store: KnownHostsStore) -> None:
        store.trust("10.0.0.5", 22, KEY.key_type, "AA:BB", KEY.public_key_base64)
        assert workflow.check("10.0.0.5", 22, KEY) == HostKeyResult.CHANGED

    def test_changed_key_type(self, workflow: HostKeyTrustWorkflow, store: KnownHostsStore) -> None:
        store.trust("10.0.0.5", 22, "ssh-rsa", KEY.fingerprint, KEY.public_key_base64)
        assert workflow.check("10.0.0.5", 22, KEY) == HostKeyResult.CHANGED


class TestVerifyKnownHosts:
    """verify() against hosts already in the store."""

    async def test_trusted_key_returns_without_prompt(
        self,
        workflow: HostKeyTrustWorkflow,
        store: KnownHostsStore,
        event_collector: EventCollector,
    ) -> None:
        store.trust("10.0.0.5", 22, KEY.key_type, KEY.fingerprint, KEY.public_key_base64)

        await workflow.verify("10.0.0.5", 22, KEY)

        assert event_collector.events == []
        assert workflow.pending() == []

    async def test_mismatch_signals_and_raises(
        self,
        workflow: HostKeyTrustWorkflow,
        store: KnownHostsStore,
        event_collector: EventCollector,
    ) -> None:
        """A stored AA:BB key and a presented CC:DD key is never prompted."""
        store.trust("10.0.0.5", 22, "ssh-ed25519", "AA:BB", "OLD")

        with pytest.raises(HostKeyMismatch) as exc_info:
            await workflow.verify("10.0.0.5", 22, KEY)

        assert exc_info.value.stored_fingerprint == "AA:BB"
        assert exc_info.value.fingerprint == "CC:DD"

        mismatches = event_collector.get_by_type(EventType.HOST_KEY_MISMATCH)
        assert len(mismatches) == 1
        assert mismatches[0].data == {
            "host": "10.0.0.5",
            "port": 22,
            "key_type": "ssh-ed25519",
            "fingerprint": "CC:DD",
            "stored_fingerprint": "AA:BB",
        }
        assert event_collector.get_by_type(EventType.HOST_KEY_PROMPT) == []
        # The stored entry is never silently replaced
        assert store.find("10.0.0.5", 22).fingerprint == "AA:BB"


class TestPrompting:
    """verify() for unseen hosts."""

    async def test_accept_trusts_and_resumes(
        self,
        workflow: HostKeyTrustWorkflow,
        store: KnownHostsStore,
        event_collector: EventCollector,
    ) -> None:
        attempt = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)

        prompts = event_collector.get_by_type(EventType.HOST_KEY_PROMPT)
        assert len(prompts) == 1
        assert prompts[0].data == {
            "host": "10.0.0.5",
            "port": 22,
            "key_type": KEY.key_type,
            "fingerprint": KEY.fingerprint,
            "public_key_base64": KEY.public_key_base64,
        }
        assert not attempt.done()

        workflow.trust_host_key("10.0.0.5", 22)
        await attempt

        entry = store.find("10.0.0.5", 22)
        assert entry is not None
        assert entry.fingerprint == KEY.fingerprint
        assert workflow.pending() == []

        # Same endpoint, same key: no second prompt
        await workflow.verify("10.0.0.5", 22, KEY)
        assert len(event_collector.get_by_type(EventType.HOST_KEY_PROMPT)) == 1

    async def test_reject(self, workflow: HostKeyTrustWorkflow, store: KnownHostsStore) -> None:
        attempt = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)

        workflow.reject_host_key("10.0.0.5", 22)

        with pytest.raises(HostKeyRejected):
            await attempt
        assert store.find("10.0.0.5", 22) is None
        assert workflow.pending() == []

    async def test_decision_host_is_case_insensitive(self, workflow: HostKeyTrustWorkflow) -> None:
        attempt = asyncio.create_task(workflow.verify("Server.LAN", 22, KEY))
        await _until_pending(workflow)

        workflow.trust_host_key("server.lan", 22)
        await attempt

    async def test_decision_without_prompt(self, workflow: HostKeyTrustWorkflow) -> None:
        with pytest.raises(HostKeyPromptNotFound):
            workflow.trust_host_key("10.0.0.5", 22)
        with pytest.raises(HostKeyPromptNotFound):
            workflow.reject_host_key("10.0.0.5", 22)

    async def test_duplicate_decision(self, workflow: HostKeyTrustWorkflow) -> None:
        attempt = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)

        workflow.trust_host_key("10.0.0.5", 22)
        with pytest.raises(HostKeyPromptNotFound):
            workflow.reject_host_key("10.0.0.5", 22)
        await attempt

    async def test_store_failure_rejects_waiter(self, emitter: EventEmitter) -> None:
        store = MagicMock(spec=KnownHostsStore)
        store.find.return_value = None
        store.trust.side_effect = OSError("disk full")
        workflow = HostKeyTrustWorkflow(store, emitter)

        attempt = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)

        with pytest.raises(OSError, match="disk full"):
            workflow.trust_host_key("10.0.0.5", 22)
        with pytest.raises(HostKeyRejected):
            await attempt

    async def test_failed_save_leaves_key_untrusted(
        self, emitter: EventEmitter, event_collector: EventCollector,
    ) -> None:
        """A key whose trust could not be persisted prompts again next time."""
        workflow = HostKeyTrustWorkflow(KnownHostsStore(FailingKnownHostsBackend()), emitter)

        attempt = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)
        with pytest.raises(OSError, match="disk full"):
            workflow.trust_host_key("10.0.0.5", 22)
        with pytest.raises(HostKeyRejected):
            await attempt

        assert workflow.check("10.0.0.5", 22, KEY) == HostKeyResult.UNKNOWN

        retry = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)
        assert len(event_collector.get_by_type(EventType.HOST_KEY_PROMPT)) == 2
        workflow.reject_host_key("10.0.0.5", 22)
        with pytest.raises(HostKeyRejected):
            await retry


class TestConcurrentAttempts:
    """A second attempt on an endpoint with an outstanding prompt joins it."""

    async def test_second_attempt_joins_single_prompt(
        self,
        workflow: HostKeyTrustWorkflow,
        event_collector: EventCollector,
    ) -> None:
        first = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        second = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow, waiters=2)

        assert len(workflow.pending()) == 1
        assert len(event_collector.get_by_type(EventType.HOST_KEY_PROMPT)) == 1

        workflow.trust_host_key("10.0.0.5", 22)
        await asyncio.gather(first, second)

    async def test_joined_attempts_share_rejection(self, workflow: HostKeyTrustWorkflow) -> None:
        first = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        second = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow, waiters=2)

        workflow.reject_host_key("10.0.0.5", 22)

        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, HostKeyRejected) for r in results)

    async def test_different_key_during_prompt_rejected(
        self,
        workflow: HostKeyTrustWorkflow,
        event_collector: EventCollector,
    ) -> None:
        first = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)

        with pytest.raises(HostKeyRejected):
            await workflow.verify("10.0.0.5", 22, OTHER_KEY)

        assert len(event_collector.get_by_type(EventType.HOST_KEY_PROMPT)) == 1
        assert workflow.pending()[0].fingerprint == KEY.fingerprint

        workflow.trust_host_key("10.0.0.5", 22)
        await first

    async def test_other_endpoints_prompt_independently(
        self,
        workflow: HostKeyTrustWorkflow,
        event_collector: EventCollector,
    ) -> None:
        a = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        b = asyncio.create_task(workflow.verify("10.0.0.5", 2222, KEY))
        for _ in range(100):
            if len(workflow.pending()) == 2:
                break
            await asyncio.sleep(0)

        assert len(event_collector.get_by_type(EventType.HOST_KEY_PROMPT)) == 2
        workflow.trust_host_key("10.0.0.5", 22)
        workflow.reject_host_key("10.0.0.5", 2222)

        await a
        with pytest.raises(HostKeyRejected):
            await b


class TestAbandonment:
    """Prompts are dropped when nobody waits for them any more."""

    async def test_cancelled_attempt_drops_prompt(self, workflow: HostKeyTrustWorkflow) -> None:
        attempt = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)

        attempt.cancel()
        with pytest.raises(asyncio.CancelledError):
            await attempt

        assert workflow.pending() == []
        with pytest.raises(HostKeyPromptNotFound):
            workflow.trust_host_key("10.0.0.5", 22)

    async def test_cancelling_one_joiner_keeps_prompt(self, workflow: HostKeyTrustWorkflow) -> None:
        first = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        second = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow, waiters=2)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        assert len(workflow.pending()) == 1
        workflow.trust_host_key("10.0.0.5", 22)
        await second

    async def test_close_rejects_waiters(self, workflow: HostKeyTrustWorkflow) -> None:
        attempt = asyncio.create_task(workflow.verify("10.0.0.5", 22, KEY))
        await _until_pending(workflow)

        workflow.close()

        with pytest.raises(HostKeyRejected):
            await attempt
        assert workflow.pending() == []


"""
Host key trust-on-first-use workflow.

Provides:
- HostKeyResult: what the known-hosts store says about a presented key
- PendingHostKeyPrompt: an outstanding accept/reject decision
- HostKeyTrustWorkflow: the Unseen -> Prompting -> {Trusted, Rejected} machine

States:
    Seen + match     -> Trusted (no prompt)
    Seen + mismatch  -> Rejected, host-key-mismatch emitted (never prompted)
    Unseen           -> Prompting -> Trusted on accept
                                  -> Rejected on reject, teardown, or abandonment

A connection attempt suspends inside verify() until the decision arrives.
At most one prompt exists per host:port. A second attempt against the same
endpoint while a prompt is outstanding joins it and shares its outcome; if
it presents a different key than the one awaiting a decision it is rejected
immediately instead.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from sshdeck.errors import HostKeyMismatch, HostKeyPromptNotFound, HostKeyRejected
from sshdeck.events import EventEmitter, EventType
from sshdeck.known_hosts import KnownHostsStore, PresentedKey
from sshdeck.models import host_key_id

logger = logging.getLogger(__name__)


class HostKeyResult(str, Enum):
    TRUSTED = "trusted"     # Key matches the stored entry
    UNKNOWN = "unknown"     # No entry for host:port
    CHANGED = "changed"     # Entry exists with a different key


@dataclass(eq=False)
class PendingHostKeyPrompt:
    """
    An unseen host key waiting for a human decision.

    decision resolves to True (accept) or False (reject); it is cancelled
    when the prompt is dropped without a decision.
    """
    host_key_id: str
    host: str
    port: int
    key_type: str
    fingerprint: str
    public_key_base64: str
    decision: "asyncio.Future[bool]"
    waiters: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "key_type": self.key_type,
            "fingerprint": self.fingerprint,
            "public_key_base64": self.public_key_base64,
        }


class HostKeyTrustWorkflow:
    """
    Gates connection establishment on a known-hosts decision.

    Usage:
        workflow = HostKeyTrustWorkflow(store, emitter)

        # from the connecting task
        await workflow.verify(host, port, presented_key)   # raises if denied

        # from the UI command surface
        workflow.trust_host_key(host, port)
    """

    def __init__(self, store: KnownHostsStore, emitter: EventEmitter) -> None:
        self._store = store
        self._emitter = emitter
        self._pending: dict[str, PendingHostKeyPrompt] = {}

    @property
    def store(self) -> KnownHostsStore:
        return self._store

    def pending(self) -> list[PendingHostKeyPrompt]:
        """Return the outstanding prompts."""
        return list(self._pending.values())

    def check(self, host: str, port: int, key: PresentedKey) -> HostKeyResult:
        """Compare a presented key with the store. Never prompts."""
        entry = self._store.find(host, port)
        if entry is None:
            return HostKeyResult.UNKNOWN
        if entry.key_type == key.key_type and entry.fingerprint == key.fingerprint:
            return HostKeyResult.TRUSTED
        return HostKeyResult.CHANGED

    async def verify(self, host: str, port: int, key: PresentedKey) -> None:
        """
        Run the trust decision for a presented key.

        Returns once the key is trusted, suspending on a prompt if the
        host has never been seen.

        Raises:
            HostKeyMismatch: The host is known with a different key
            HostKeyRejected: The prompt was rejected, dropped or abandoned
        """
        result = self.check(host, port, key)

        if result == HostKeyResult.TRUSTED:
            return

        if result == HostKeyResult.CHANGED:
            stored = self._store.find(host, port)
            assert stored is not None
            logger.warning(
                f"Host key mismatch for {host}:{port}: presented {key.fingerprint}, "
                f"stored {stored.fingerprint}"
            )
            self._emitter.emit(
                EventType.HOST_KEY_MISMATCH,
                host=host,
                port=port,
                key_type=key.key_type,
                fingerprint=key.fingerprint,
                stored_fingerprint=stored.fingerprint,
            )
            raise HostKeyMismatch(
                host=host,
                port=port,
                key_type=key.key_type,
                fingerprint=key.fingerprint,
                stored_fingerprint=stored.fingerprint,
            )

        if not await self._await_decision(host, port, key):
            raise HostKeyRejected(f"Host key for {host}:{port} was not trusted")

    async def _await_decision(self, host: str, port: int, key: PresentedKey) -> bool:
        hk_id = host_key_id(host, port)
        prompt = self._pending.get(hk_id)

        if prompt is None:
            prompt = PendingHostKeyPrompt(
                host_key_id=hk_id,
                host=host,
                port=port,
                key_type=key.key_type,
                fingerprint=key.fingerprint,
                public_key_base64=key.public_key_base64,
                decision=asyncio.get_running_loop().create_future(),
            )
            self._pending[hk_id] = prompt
            logger.info(f"Awaiting host key decision for {hk_id}: {key.key_type} {key.fingerprint}")
            self._emitter.emit(EventType.HOST_KEY_PROMPT, **prompt.to_dict())
        elif prompt.fingerprint != key.fingerprint or prompt.key_type != key.key_type:
            logger.warning(
                f"Host {hk_id} presented {key.fingerprint} while {prompt.fingerprint} "
                f"is awaiting a decision"
            )
            return False
        else:
            logger.debug(f"Joining pending host key decision for {hk_id}")

        prompt.waiters += 1
        try:
            return await asyncio.shield(prompt.decision)
        except asyncio.CancelledError:
            if not prompt.decision.cancelled():
                # This attempt was abandoned; the decision itself is still open
                raise
            return False
        finally:
            prompt.waiters -= 1
            if prompt.waiters == 0:
                self._drop(prompt)

    def trust_host_key(self, host: str, port: int) -> None:
        """
        Accept the pending key for host:port and record it as trusted.

        Raises:
            HostKeyPromptNotFound: No decision is pending for the endpoint
        """
        prompt = self._take(host, port)
        try:
            self._store.trust(
                prompt.host,
                prompt.port,
                prompt.key_type,
                prompt.fingerprint,
                prompt.public_key_base64,
            )
        except Exception:
            prompt.decision.set_result(False)
            raise
        prompt.decision.set_result(True)

    def reject_host_key(self, host: str, port: int) -> None:
        """
        Reject the pending key for host:port.

        Raises:
            HostKeyPromptNotFound: No decision is pending for the endpoint
        """
        prompt = self._take(host, port)
        logger.info(f"Host key for {prompt.host_key_id} rejected")
        prompt.decision.set_result(False)

    def close(self) -> None:
        """Drop every pending prompt; their waiters see a rejection."""
        for prompt in list(self._pending.values()):
            self._drop(prompt)

    def _take(self, host: str, port: int) -> PendingHostKeyPrompt:
        prompt = self._pending.pop(host_key_id(host, port), None)
        if prompt is None or prompt.decision.done():
            raise HostKeyPromptNotFound(host, port)
        return prompt

    def _drop(self, prompt: PendingHostKeyPrompt) -> None:
        if self._pending.get(prompt.host_key_id) is prompt:
            del self._pending[prompt.host_key_id]
        if not prompt.decision.done():
            logger.info(f"Host key prompt for {prompt.host_key_id} dropped without a decision")
            prompt.decision.cancel()

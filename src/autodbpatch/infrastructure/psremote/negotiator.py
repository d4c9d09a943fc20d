"""
Authentication negotiation for remote execution.

Per host state machine:

    UNTESTED -> TEST_PRIMARY -> ESTABLISHED
                     |  (primary is CredSSP, first failure for this host)
                     +-> CONFIGURE_CREDSSP -> TEST_PRIMARY
                     |  (still failing)
                     +-> PROMPT_FALLBACK -> ESTABLISHED_FALLBACK   (approved)
                                         -> FAILED                 (declined)

CredSSP is configured at most once per host per run. FAILED raises AuthError
for that host only.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from autodbpatch.domain.errors import AuthError, PatchError
from autodbpatch.hotfix.backend import Channel, HostBackend
from autodbpatch.hotfix.models import HostCredential

logger = logging.getLogger(__name__)

ApproveFallback = Callable[[str, str], bool]


class NegotiationState(Enum):
    """States of the per-host negotiation."""

    UNTESTED = "untested"
    TEST_PRIMARY = "test_primary"
    CONFIGURE_CREDSSP = "configure_credssp"
    PROMPT_FALLBACK = "prompt_fallback"
    ESTABLISHED = "established"
    ESTABLISHED_FALLBACK = "established_fallback"
    FAILED = "failed"


@dataclass
class NegotiationResult:
    """Outcome of negotiating one host."""

    computer_name: str
    state: NegotiationState = NegotiationState.UNTESTED
    protocol: str | None = None
    channel: Channel | None = None
    history: list[NegotiationState] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def established(self) -> bool:
        return self.state in (NegotiationState.ESTABLISHED, NegotiationState.ESTABLISHED_FALLBACK)


class AuthenticationNegotiator:
    """
    Establishes a remote channel, falling back once if allowed.

    Usage:
        negotiator = AuthenticationNegotiator(backend, credential, primary_protocol="CredSSP",
                                              approve_fallback=lambda host, proto: True)
        channel = negotiator.establish("SQL01")
    """

    def __init__(
        self,
        backend: HostBackend,
        credential: HostCredential | None = None,
        primary_protocol: str = "Default",
        fallback_protocol: str = "Default",
        approve_fallback: ApproveFallback | None = None,
    ):
        self.backend = backend
        self.credential = credential
        self.primary_protocol = primary_protocol
        self.fallback_protocol = fallback_protocol
        self.approve_fallback = approve_fallback
        self._credssp_configured: set[str] = set()
        self._lock = threading.Lock()

    def establish(self, computer_name: str) -> Channel:
        """
        Raises:
            AuthError: Negotiation ended in FAILED
        """
        result = self.negotiate(computer_name)
        if not result.established:
            raise AuthError(
                f"Authentication to {computer_name} failed: " + "; ".join(result.errors)
            )
        return result.channel

    def negotiate(self, computer_name: str) -> NegotiationResult:
        result = NegotiationResult(computer_name=computer_name)
        state = NegotiationState.TEST_PRIMARY
        result.history.append(NegotiationState.UNTESTED)

        while True:
            result.history.append(state)
            logger.debug("%s: negotiation state %s", computer_name, state.value)

            if state is NegotiationState.TEST_PRIMARY:
                channel = self._try(result, self.primary_protocol)
                if channel is not None:
                    state = NegotiationState.ESTABLISHED
                elif self._should_configure_credssp(computer_name):
                    state = NegotiationState.CONFIGURE_CREDSSP
                else:
                    state = NegotiationState.PROMPT_FALLBACK

            elif state is NegotiationState.CONFIGURE_CREDSSP:
                self._configure_credssp(result)
                state = NegotiationState.TEST_PRIMARY

            elif state is NegotiationState.PROMPT_FALLBACK:
                if not self._fallback_approved(computer_name):
                    result.errors.append(f"Fallback to {self.fallback_protocol} not approved")
                    state = NegotiationState.FAILED
                else:
                    channel = self._try(result, self.fallback_protocol)
                    state = (
                        NegotiationState.ESTABLISHED_FALLBACK
                        if channel is not None
                        else NegotiationState.FAILED
                    )

            else:
                result.state = state
                if result.established:
                    logger.info(
                        "%s: remote channel established with %s%s",
                        computer_name,
                        result.protocol,
                        " (fallback)" if state is NegotiationState.ESTABLISHED_FALLBACK else "",
                    )
                else:
                    logger.error("%s: authentication failed", computer_name)
                return result

    def _try(self, result: NegotiationResult, protocol: str) -> Channel | None:
        try:
            channel = self.backend.establish_remote_channel(
                result.computer_name, self.credential, protocol
            )
        except AuthError as exc:
            logger.warning("%s: %s authentication failed: %s", result.computer_name, protocol, exc)
            result.errors.append(f"{protocol}: {exc}")
            return None
        result.channel = channel
        result.protocol = protocol
        return channel

    def _should_configure_credssp(self, computer_name: str) -> bool:
        if self.primary_protocol.lower() != "credssp":
            return False
        with self._lock:
            if computer_name in self._credssp_configured:
                return False
            self._credssp_configured.add(computer_name)
            return True

    def _configure_credssp(self, result: NegotiationResult) -> None:
        logger.info("%s: configuring CredSSP", result.computer_name)
        try:
            self.backend.configure_credssp(result.computer_name, self.credential)
        except PatchError as exc:
            logger.warning("%s: CredSSP configuration failed: %s", result.computer_name, exc)
            result.errors.append(f"CredSSP configuration: {exc}")

    def _fallback_approved(self, computer_name: str) -> bool:
        if self.fallback_protocol.lower() == self.primary_protocol.lower():
            return False
        if self.approve_fallback is None:
            logger.warning(
                "%s: %s failed and no interactive approval for %s is available",
                computer_name, self.primary_protocol, self.fallback_protocol,
            )
            return False
        return bool(self.approve_fallback(computer_name, self.fallback_protocol))

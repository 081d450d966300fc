"""
Session binding: how a presented IP / browser fingerprint is checked against
the values bound to the session at creation.

Policies are chosen per exam (``Exam.binding_mode``). They only decide; the
session manager records the violations and applies the rebinding.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..models.exam_session_model import ViolationType

logger = logging.getLogger(__name__)


@dataclass
class BindingOutcome:
    allowed: bool = True
    reason: Optional[str] = None
    # (violation type, detail) pairs to record against the session
    violations: List[Tuple[ViolationType, str]] = field(default_factory=list)
    rebind_ip: Optional[str] = None
    rebind_fingerprint: Optional[str] = None


class BindingPolicy:
    name = "base"

    def evaluate(self, exam_session, ip_address: str, fingerprint: Optional[str]) -> BindingOutcome:
        raise NotImplementedError


class StandardBindingPolicy(BindingPolicy):
    """
    IP drift is soft: recorded as ``ip_change``, the stored IP is updated and
    access continues (mobile / VPN churn). Fingerprint drift is hard: recorded
    as ``browser_change`` and access is denied.
    """
    name = "standard"

    def evaluate(self, exam_session, ip_address, fingerprint):
        outcome = BindingOutcome()
        if exam_session.ip_address != ip_address:
            outcome.violations.append(
                (ViolationType.IP_CHANGE, f"IP changed from {exam_session.ip_address} to {ip_address}")
            )
            outcome.rebind_ip = ip_address
        if exam_session.browser_fingerprint != fingerprint:
            outcome.violations.append((ViolationType.BROWSER_CHANGE, "Browser fingerprint changed"))
            outcome.allowed = False
            outcome.reason = "browser_mismatch"
        return outcome


class StrictBindingPolicy(BindingPolicy):
    """Any drift denies access. The reason does not say which check failed."""
    name = "strict"

    def evaluate(self, exam_session, ip_address, fingerprint):
        outcome = BindingOutcome()
        if exam_session.ip_address != ip_address:
            outcome.violations.append(
                (ViolationType.IP_CHANGE, f"IP changed from {exam_session.ip_address} to {ip_address}")
            )
            outcome.allowed = False
        if exam_session.browser_fingerprint != fingerprint:
            outcome.violations.append((ViolationType.BROWSER_CHANGE, "Browser fingerprint changed"))
            outcome.allowed = False
        if not outcome.allowed:
            outcome.reason = "session_binding_failed"
        return outcome


class LenientBindingPolicy(BindingPolicy):
    """IP drift is only followed; fingerprint drift is recorded but allowed and rebound."""
    name = "lenient"

    def evaluate(self, exam_session, ip_address, fingerprint):
        outcome = BindingOutcome()
        if exam_session.ip_address != ip_address:
            logger.info("Session %s moved from %s to %s", exam_session.id, exam_session.ip_address, ip_address)
            outcome.rebind_ip = ip_address
        if fingerprint and exam_session.browser_fingerprint != fingerprint:
            outcome.violations.append((ViolationType.BROWSER_CHANGE, "Browser fingerprint changed"))
            outcome.rebind_fingerprint = fingerprint
        return outcome


_POLICIES = {
    StandardBindingPolicy.name: StandardBindingPolicy(),
    StrictBindingPolicy.name: StrictBindingPolicy(),
    LenientBindingPolicy.name: LenientBindingPolicy(),
}


def get_binding_policy(mode: Optional[str]) -> BindingPolicy:
    policy = _POLICIES.get(mode or StandardBindingPolicy.name)
    if policy is None:
        logger.warning("Unknown binding mode %r, using standard", mode)
        policy = _POLICIES[StandardBindingPolicy.name]
    return policy

"""
Provider identity canonicalization and claimed-vs-detected validation.

High level
----------
Offices type provider names by hand ("PLDT Inc", "globe telecom") and the
detection facility reports organization strings ("PLDT.com", "Converge ICT
Solutions Inc"). Both are reduced to a short canonical name before they are
compared or persisted, so that results for one provider are never split
across spellings.

Resolution order for `canonicalize`:
1) case-insensitive match against a canonical name,
2) exact match against an alias,
3) an alias contained in the input (fallback),
4) otherwise the trimmed input is its own canonical form.

Validation confidence is one of {0, 30, 60, 80, 100}. Strict mode gates the
start of a measurement; relaxed mode is informational only and always lets
the caller proceed.
"""

from __future__ import annotations

import json
import pathlib
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Set

# Canonical provider → known aliases (lowercase). Order matters for the
# substring fallback: the first provider whose alias is contained wins.
KNOWN_PROVIDER_ALIASES: Dict[str, Set[str]] = {
    "PLDT": {
        "pldt",
        "pldtr",
        "philippine long distance telephone company",
        "pldt inc",
        "pldt.com",
    },
    "Globe": {"globe", "globe telecom", "globe telecom inc", "globe.com.ph"},
    "Converge": {"converge", "converge ict", "converge ict solutions inc", "convergeict.com"},
    "Smart": {"smart", "smart communications", "smart communications inc", "smart.com.ph"},
    "Sky": {"sky", "sky broadband", "sky cable", "skycable.com"},
    "DITO": {"dito", "dito telecommunity", "dito cme", "dito.ph"},
}

EXACT_MATCH = 100
PARTIAL_MATCH = 80
SHARED_INFRASTRUCTURE_MATCH = 60
RELAXED_MISMATCH = 30
NO_MATCH = 0

# Returned by the detection facility when no provider could be resolved.
UNKNOWN_IDENTITY = "Unknown ISP - Please select manually"


@dataclass(frozen=True)
class IdentityResolution:
    """
    Outcome of comparing a claimed provider with a detected one.

    Attributes:
        claimed: raw claimed identity.
        detected: raw detected identity.
        claimed_canonical: canonical form of `claimed`.
        detected_canonical: canonical form of `detected`.
        confidence: one of 0, 30, 60, 80, 100.
        is_match: True for exact or partial canonical agreement.
        allow_proceed: whether the measurement may start.
        suggestion: optional human-readable explanation.
    """

    claimed: str
    detected: str
    claimed_canonical: str
    detected_canonical: str
    confidence: int
    is_match: bool
    allow_proceed: bool
    suggestion: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "isMatch": self.is_match,
            "confidence": self.confidence,
            "detectedCanonical": self.detected_canonical,
            "selectedCanonical": self.claimed_canonical,
            "allowProceed": self.allow_proceed,
        }
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


class IdentityResolver:
    """
    Canonicalizes provider names against an alias table and validates
    claimed identities against detected ones.
    """

    def __init__(
        self,
        aliases: Optional[Dict[str, Iterable[str]]] = None,
        shared_infrastructure: str = "PLDT",
    ):
        table = KNOWN_PROVIDER_ALIASES if aliases is None else aliases
        self._aliases: Dict[str, Set[str]] = {
            canonical: {a.strip().lower() for a in names if a.strip()}
            for canonical, names in table.items()
        }
        self.shared_infrastructure = shared_infrastructure

    @classmethod
    def from_file(cls, path: str, shared_infrastructure: str = "PLDT") -> "IdentityResolver":
        """
        Load an alias table from JSON shaped like
        {"PLDT": ["pldt", "pldt inc"], "Globe": ["globe telecom"]}.
        """
        with open(pathlib.Path(path), "r", encoding="utf-8") as fh:
            payload = json.load(fh)
        if not isinstance(payload, dict):
            raise ValueError(f"Identity table {path!r} must be a JSON object")
        return cls(payload, shared_infrastructure=shared_infrastructure)

    @property
    def canonical_names(self) -> Sequence[str]:
        return tuple(self._aliases)

    def canonicalize(self, name: Optional[str]) -> str:
        if not name or not name.strip():
            return ""
        trimmed = name.strip()
        key = trimmed.lower()

        for canonical in self._aliases:
            if canonical.lower() == key:
                return canonical
        for canonical, aliases in self._aliases.items():
            if key in aliases:
                return canonical
        for canonical, aliases in self._aliases.items():
            if any(alias in key for alias in aliases):
                return canonical
        return trimmed

    def validate(self, claimed: str, detected: str, relaxed: bool = False) -> IdentityResolution:
        claimed_canonical = self.canonicalize(claimed)
        detected_canonical = self.canonicalize(detected)

        def _resolution(confidence, is_match, allow_proceed, suggestion=None):
            return IdentityResolution(
                claimed=claimed,
                detected=detected,
                claimed_canonical=claimed_canonical,
                detected_canonical=detected_canonical,
                confidence=confidence,
                is_match=is_match,
                allow_proceed=allow_proceed,
                suggestion=suggestion,
            )

        if claimed_canonical == detected_canonical:
            return _resolution(EXACT_MATCH, True, True)

        claimed_lower = claimed_canonical.lower()
        detected_lower = detected_canonical.lower()
        if claimed_lower and detected_lower and (
            claimed_lower in detected_lower or detected_lower in claimed_lower
        ):
            return _resolution(PARTIAL_MATCH, True, True)

        if relaxed:
            others = set(self._aliases) - {self.shared_infrastructure}
            if detected_canonical == self.shared_infrastructure and claimed_canonical in others:
                return _resolution(
                    SHARED_INFRASTRUCTURE_MATCH,
                    False,
                    True,
                    f"Note: Detected infrastructure provider is {detected_canonical}, but your "
                    f"service provider is {claimed_canonical}. This is common when providers share "
                    f"infrastructure. Test will proceed with {claimed_canonical} as the ISP.",
                )
            return _resolution(
                RELAXED_MISMATCH,
                False,
                True,
                f'Warning: Detected ISP "{detected_canonical}" differs from selected ISP '
                f'"{claimed_canonical}". Test will proceed but data may be attributed to the wrong ISP.',
            )

        return _resolution(
            NO_MATCH,
            False,
            False,
            f'Detected ISP "{detected_canonical}" does not match selected ISP "{claimed_canonical}". '
            "Please verify your connection and select the correct ISP.",
        )

    def suggest_configured(self, detected: str, configured: Iterable[str]) -> Optional[str]:
        """
        Return the first configured provider name that canonicalizes to the
        same identity as `detected`, if any.
        """
        target = self.canonicalize(detected)
        if not target:
            return None
        for name in configured:
            if self.canonicalize(name) == target:
                return name
        return None


DEFAULT_RESOLVER = IdentityResolver()


def canonicalize(name: Optional[str]) -> str:
    """Canonicalize with the built-in alias table."""
    return DEFAULT_RESOLVER.canonicalize(name)


def validate_identity(claimed: str, detected: str, relaxed: bool = False) -> IdentityResolution:
    """Validate with the built-in alias table."""
    return DEFAULT_RESOLVER.validate(claimed, detected, relaxed=relaxed)


def resolver_from_settings(settings) -> IdentityResolver:
    if settings.identity_table:
        return IdentityResolver.from_file(
            settings.identity_table, shared_infrastructure=settings.shared_infrastructure
        )
    return IdentityResolver(shared_infrastructure=settings.shared_infrastructure)

"""
Office records and the provider entries configured for them.

Offices are owned by an external administration layer; speedmon only reads
them. An office lists its providers either as a single legacy `isp` string or
as an `isps` list, and may additionally group providers per section. Entries
can carry a description in parentheses, e.g. "PLDT (Backup Line)".
"""

from __future__ import annotations

import json
import logging
import pathlib
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .identity import DEFAULT_RESOLVER, IdentityResolver

LOGGER = logging.getLogger(__name__)

_DESCRIBED_ENTRY = re.compile(r"^(.+?)\s*\((.+?)\)$")
PRIMARY_DESCRIPTION = "Primary ISP"


@dataclass(frozen=True)
class Provider:
    """
    One provider entry of an office.

    Attributes:
        id: slug unique within the office (e.g. "pldt-backup-line").
        name: provider name without description.
        description: free text ("Primary ISP", "Backup Line", "Admin - ISP 1").
        section: grouping label for section-specific providers.
    """

    id: str
    name: str
    description: str = ""
    section: Optional[str] = None


@dataclass
class Office:
    """
    Read-only view of an office record.

    Attributes:
        id: office identifier.
        name: display name.
        isp: legacy single provider, also the default identity.
        isps: provider entries, possibly with "(description)" suffixes.
        section_isps: section label → provider entries for that section.
    """

    id: str
    name: str = ""
    isp: str = ""
    isps: List[str] = field(default_factory=list)
    section_isps: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise ValueError("Office id must be a non-empty string")
        self.id = str(self.id).strip()

    @classmethod
    def from_dict(cls, data: dict) -> "Office":
        isps = data.get("isps") or []
        if isinstance(isps, str):
            isps = json.loads(isps)
        section_isps = data.get("sectionISPs", data.get("section_isps")) or {}
        if isinstance(section_isps, str):
            section_isps = json.loads(section_isps)
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            isp=data.get("isp") or "",
            isps=[str(i) for i in isps],
            section_isps={str(k): [str(i) for i in v] for k, v in section_isps.items() if isinstance(v, list)},
        )

    def default_identity(self) -> str:
        if self.isp:
            return self.isp
        for provider in self.providers():
            return provider.name
        return ""

    def providers(self, resolver: IdentityResolver = DEFAULT_RESOLVER) -> List[Provider]:
        providers: List[Provider] = []

        if self.isp and not self.isps:
            providers.append(
                Provider(generate_provider_id(self.isp, [], resolver), self.isp, PRIMARY_DESCRIPTION)
            )
        else:
            existing: List[str] = []
            for index, entry in enumerate(e.strip() for e in self.isps):
                if not entry:
                    continue
                match = _DESCRIBED_ENTRY.match(entry)
                if match:
                    name, description = match.group(1).strip(), match.group(2).strip()
                    pid = generate_provider_id(f"{name}-{description}", existing, resolver)
                else:
                    name = entry
                    description = PRIMARY_DESCRIPTION if index == 0 else f"ISP {index + 1}"
                    pid = generate_provider_id(name, existing, resolver)
                existing.append(pid)
                providers.append(Provider(pid, name, description))

        for section, entries in self.section_isps.items():
            existing = [p.id for p in providers]
            for index, entry in enumerate(e.strip() for e in entries):
                if not entry:
                    continue
                match = _DESCRIBED_ENTRY.match(entry)
                if match:
                    name, description = match.group(1).strip(), match.group(2).strip()
                    pid = generate_provider_id(f"{name}-{description}-{section}", existing, resolver)
                else:
                    name = entry
                    description = f"{section} - ISP {index + 1}"
                    pid = generate_provider_id(f"{name}-{section}", existing, resolver)
                existing.append(pid)
                providers.append(Provider(pid, name, description, section))

        return providers

    def configured_names(self) -> List[str]:
        names = [p.name for p in self.providers()]
        return list(dict.fromkeys(names))


def generate_provider_id(
    name: str, existing_ids: List[str], resolver: IdentityResolver = DEFAULT_RESOLVER
) -> str:
    base = re.sub(r"\s+", "-", resolver.canonicalize(name)).lower()
    if base not in existing_ids:
        return base
    counter = 2
    while f"{base}-{counter}" in existing_ids:
        counter += 1
    return f"{base}-{counter}"


def provider_display_name(provider: Provider) -> str:
    if "(" in provider.name and ")" in provider.name:
        return provider.name
    description = provider.description
    if provider.section and description and not description.startswith(provider.section):
        return f"{provider.name} ({description})"
    if (
        description
        and description != PRIMARY_DESCRIPTION
        and not description.startswith("ISP ")
        and " - ISP " not in description
    ):
        return f"{provider.name} ({description})"
    return provider.name


def resolve_provider(office: Office, provider_id: str) -> Optional[Provider]:
    """
    Look up `provider_id` among the office's providers. Callers may also pass
    a plain provider name, which is returned as an ad-hoc entry.
    """
    if not provider_id or not provider_id.strip():
        return None
    for provider in office.providers():
        if provider.id == provider_id:
            return provider
    return Provider(id=provider_id, name=provider_id.strip())


# ------------------------------------------------------------------------------
# Office directories (external collaborator)
# ------------------------------------------------------------------------------


class InMemoryOfficeDirectory:
    def __init__(self, offices=()):
        self._offices: Dict[str, Office] = {o.id: o for o in offices}

    def get(self, office_id: str) -> Optional[Office]:
        return self._offices.get(office_id)

    def add(self, office: Office) -> None:
        self._offices[office.id] = office


class JsonOfficeDirectory:
    """
    Office directory backed by a JSON file, either a list of office objects
    or {"offices": [...]}. The file is re-read on every lookup so edits made
    by the administration layer are picked up without a restart.
    """

    def __init__(self, path: str):
        self.path = pathlib.Path(path)

    def _load(self) -> Dict[str, Office]:
        if not self.path.is_file():
            LOGGER.warning(f"Office file {self.path} not found; no offices are configured")
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
        if isinstance(payload, dict):
            payload = payload.get("offices", [])
        offices = [Office.from_dict(item) for item in payload]
        return {o.id: o for o in offices}

    def get(self, office_id: str) -> Optional[Office]:
        return self._load().get(office_id)

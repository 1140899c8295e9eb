"""
Provider identity detection via public address-to-organization lookups.

High level
----------
`IdentityDetector.detect()` asks each configured lookup service in turn for
the organization owning the caller's address and returns the first usable
answer. The answer is raw (e.g. "AS9299 Philippine Long Distance Telephone
Company"); canonicalization is left to the identity resolver.

Key behaviors
-------------
- The organization is read from the first present field among
  org, isp, as, organization, company.name.
- Answers containing any configured ignore substring (hosting providers
  that front the server, "railway" by default) are treated as no answer.
- Each lookup has its own short timeout and a small retry/backoff; a
  failing service is skipped, never fatal.
- When no service answers, the sentinel `UNKNOWN_IDENTITY` is returned.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import replace
from typing import Any, Dict, Optional

import requests

from .config import Settings
from .identity import UNKNOWN_IDENTITY

LOGGER = logging.getLogger(__name__)

USER_AGENT = "speedmon/1.0"
_ORG_FIELDS = ("org", "isp", "as", "organization")

# Organizations that front a hosted deployment rather than an access network.
HOSTING_PROVIDERS = (
    "railway",
    "vercel",
    "aws",
    "amazon",
    "google cloud",
    "microsoft azure",
    "digitalocean",
    "linode",
    "vultr",
    "cloudflare",
    "netlify",
    "heroku",
)


class ServiceLookupError(RuntimeError):
    """Raised when one lookup service fails after all retries."""


# ------------------------------------------------------------------------------
# Small utilities
# ------------------------------------------------------------------------------


def _sleep_backoff(i: int) -> None:
    """Sequence ~ 0.25s, 0.5s, 1s."""
    time.sleep(0.25 * (2**i))


def request_json(
    url: str, *, timeout: float, attempts: int = 2, session=None, body: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    GET a JSON object (POST `body` as JSON when given) with simple
    retry/backoff. Raises ServiceLookupError once every attempt has failed on
    a network, HTTP or decode problem.
    """
    last_exc: Exception | None = None
    getter = session or requests
    headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    for i in range(attempts):
        try:
            if body is None:
                resp = getter.get(url, timeout=timeout, headers=headers)
            else:
                resp = getter.post(url, json=body, timeout=timeout, headers=headers)
            resp.raise_for_status()
            payload = resp.json()
            if not isinstance(payload, dict):
                raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
            return payload
        except (requests.RequestException, json.JSONDecodeError, ValueError) as e:
            last_exc = e
            if i + 1 < attempts:
                _sleep_backoff(i)
    assert last_exc is not None
    raise ServiceLookupError(f"Failed {'GET' if body is None else 'POST'} {url}: {last_exc}") from last_exc


def service_url(template: str, client_ip: Optional[str]) -> str:
    """
    Fill the `{ip}` placeholder. Without an address the placeholder is
    removed, so the service reports on the requester's own address.
    """
    if client_ip:
        return template.replace("{ip}", client_ip)
    return template.replace("{ip}/", "").replace("{ip}", "")


def organization_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    for key in _ORG_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    company = payload.get("company")
    if isinstance(company, dict):
        name = company.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
    return None


def client_address(headers) -> Optional[str]:
    """Caller address from proxy headers: x-forwarded-for, x-real-ip, cf-connecting-ip."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip") or headers.get("cf-connecting-ip") or None


# ------------------------------------------------------------------------------
# Detector
# ------------------------------------------------------------------------------


class IdentityDetector:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self._services = settings.detection_services
        self._timeout = settings.detection_timeout
        self._ignore = tuple(s.lower() for s in settings.detection_ignore)
        self._session = session

    def is_ignored(self, organization: str) -> bool:
        lowered = organization.lower()
        return lowered == "unknown" or any(token in lowered for token in self._ignore)

    def detect(self, client_ip: Optional[str] = None) -> str:
        LOGGER.info(f"Detecting provider for {client_ip or 'the requesting address'}")
        for template in self._services:
            url = service_url(template, client_ip)
            try:
                payload = request_json(url, timeout=self._timeout, session=self._session)
            except ServiceLookupError as e:
                LOGGER.warning(str(e))
                continue

            organization = organization_from_payload(payload)
            if organization is None:
                LOGGER.debug(f"No organization field in response from {url}")
                continue
            if self.is_ignored(organization):
                LOGGER.info(f"Ignoring organization {organization!r} from {url}")
                continue

            LOGGER.info(f"Detected provider {organization!r} via {url}")
            return organization

        LOGGER.warning("All provider detection services failed")
        return UNKNOWN_IDENTITY


def client_detector(settings: Settings, session: Optional[requests.Session] = None) -> IdentityDetector:
    """
    Detector for the measuring host itself: the configured services, asked
    about the requesting address, with hosting providers rejected as well.
    """
    ignore = tuple(dict.fromkeys(settings.detection_ignore + HOSTING_PROVIDERS))
    return IdentityDetector(replace(settings, detection_ignore=ignore), session=session)

"""
Website ownership challenges and the checkers that look for them.

An owner proves control of the entity's website by publishing a token in one of
three places: a DNS TXT record, a file at the site root, or a meta tag on the home page.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from app.models.enums import WebsiteVerificationMethod
from app.services.errors import ValidationError, WebsiteCheckError

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "entity-verification"

_META_TAG = re.compile(r"<meta\b[^>]*>", re.IGNORECASE)
_ATTRIBUTE = re.compile(r"""([\w-]+)\s*=\s*["']([^"']*)["']""")
_TXT_CHUNK = re.compile(r'"([^"]*)"')


def site_root(website: str) -> str:
    """Scheme and host of a website URL. A bare host is treated as https."""
    candidate = website.strip()
    if "://" not in candidate:
        candidate = "https://" + candidate
    parts = urlsplit(candidate)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValidationError(f"Website is not a valid http(s) URL: {website}")
    return f"{parts.scheme}://{parts.netloc}"


@dataclass(frozen=True)
class WebsiteInstructions:
    """What the owner has to publish for one challenge."""
    method: WebsiteVerificationMethod
    website: str
    token: str
    dns_record_name: str
    dns_record_value: str
    verification_file_name: str
    verification_file_url: str
    verification_file_content: str
    meta_tag_content: str

    @property
    def expected_value(self) -> str:
        if self.method == WebsiteVerificationMethod.DNS:
            return self.dns_record_value
        if self.method == WebsiteVerificationMethod.FILE:
            return self.verification_file_content
        return self.meta_tag_content


def build_instructions(website: str, method: WebsiteVerificationMethod, token: str) -> WebsiteInstructions:
    root = site_root(website)
    file_name = f"{CHALLENGE_PREFIX}-{token[:16]}.txt"
    value = f"{CHALLENGE_PREFIX}={token}"
    return WebsiteInstructions(
        method=WebsiteVerificationMethod(method),
        website=root,
        token=token,
        dns_record_name=f"_{CHALLENGE_PREFIX}.{urlsplit(root).hostname}",
        dns_record_value=value,
        verification_file_name=file_name,
        verification_file_url=f"{root}/{file_name}",
        verification_file_content=value,
        meta_tag_content=f'<meta name="{CHALLENGE_PREFIX}" content="{token}">',
    )


class WebsiteChecker(ABC):
    """Looks for a published challenge. Lookup failures must surface as WebsiteCheckError."""

    @abstractmethod
    def check(self, instructions: WebsiteInstructions) -> bool:
        """True if the challenge is published where `instructions.method` says."""


class HttpWebsiteChecker(WebsiteChecker):
    """Fetches the file or home page over HTTP and resolves TXT records over DNS-over-HTTPS."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        dns_over_https_url: str = "https://dns.google/resolve",
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.timeout_seconds = timeout_seconds
        self.dns_over_https_url = dns_over_https_url
        self.transport = transport

    def check(self, instructions: WebsiteInstructions) -> bool:
        try:
            with httpx.Client(
                timeout=self.timeout_seconds, transport=self.transport, follow_redirects=True
            ) as client:
                if instructions.method == WebsiteVerificationMethod.DNS:
                    return self._check_dns(client, instructions)
                if instructions.method == WebsiteVerificationMethod.FILE:
                    return self._check_file(client, instructions)
                return self._check_meta_tag(client, instructions)
        except httpx.HTTPError as exc:
            raise WebsiteCheckError(f"Could not reach {instructions.website}: {exc}") from exc

    def _get(self, client: httpx.Client, url: str, **kwargs) -> httpx.Response:
        response = client.get(url, **kwargs)
        if response.status_code >= 500:
            raise WebsiteCheckError(f"{url} answered {response.status_code}")
        return response

    def _check_file(self, client: httpx.Client, instructions: WebsiteInstructions) -> bool:
        response = self._get(client, instructions.verification_file_url)
        if response.status_code != 200:
            return False
        return response.text.strip() == instructions.verification_file_content

    def _check_meta_tag(self, client: httpx.Client, instructions: WebsiteInstructions) -> bool:
        response = self._get(client, instructions.website)
        if response.status_code != 200:
            return False
        for tag in _META_TAG.findall(response.text):
            attributes = {name.lower(): value for name, value in _ATTRIBUTE.findall(tag)}
            if attributes.get("name") == CHALLENGE_PREFIX and attributes.get("content") == instructions.token:
                return True
        return False

    def _check_dns(self, client: httpx.Client, instructions: WebsiteInstructions) -> bool:
        response = self._get(
            client,
            self.dns_over_https_url,
            params={"name": instructions.dns_record_name, "type": "TXT"},
            headers={"accept": "application/dns-json"},
        )
        if response.status_code != 200:
            raise WebsiteCheckError(f"DNS lookup for {instructions.dns_record_name} failed: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise WebsiteCheckError(f"DNS lookup returned malformed JSON: {exc}") from exc

        for answer in payload.get("Answer") or []:
            data = str(answer.get("data", ""))
            # Long TXT values arrive as several quoted chunks
            chunks = _TXT_CHUNK.findall(data)
            if ("".join(chunks) if chunks else data.strip()) == instructions.dns_record_value:
                return True
        logger.debug("dns_challenge_absent name=%s", instructions.dns_record_name)
        return False


@dataclass
class InMemoryWebsiteChecker(WebsiteChecker):
    """Treats whatever was passed to publish() as live on the web."""
    published: Dict[Tuple[str, WebsiteVerificationMethod], str] = field(default_factory=dict)

    def publish(self, instructions: WebsiteInstructions) -> None:
        self.published[(instructions.website, instructions.method)] = instructions.expected_value

    def check(self, instructions: WebsiteInstructions) -> bool:
        return self.published.get((instructions.website, instructions.method)) == instructions.expected_value

"""Parsing of container image references and registry host helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

_DEFAULT_DOMAIN = "docker.io"
_LEGACY_DEFAULT_DOMAIN = "index.docker.io"
_OFFICIAL_REPO_PREFIX = "library/"
_DEFAULT_TAG = "latest"
_NAME_TOTAL_LENGTH_MAX = 255

_ALNUM = r"[a-z0-9]+"
_SEPARATOR = r"(?:[._]|__|[-]*)"
_PATH_COMPONENT = rf"{_ALNUM}(?:{_SEPARATOR}{_ALNUM})*"
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"

_REFERENCE_RE = re.compile(
    rf"(?P<domain>{_DOMAIN})/(?P<path>{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*)"
    rf"(?::(?P<tag>{_TAG}))?(?:@(?P<digest>{_DIGEST}))?",
    re.ASCII,
)
_ANCHORED_ID_RE = re.compile(r"[a-f0-9]{64}")


@dataclass(frozen=True)
class Image:
    """Registry host and repository path of an image."""

    host: str
    repo: str


@dataclass(frozen=True)
class Reference:
    """A normalized image reference."""

    domain: str
    path: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    def name(self) -> str:
        """Return the repository name including the domain."""
        return f"{self.domain}/{self.path}"

    def __str__(self) -> str:
        text = self.name()
        if self.tag:
            text += f":{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text


def _split_docker_domain(name: str) -> tuple[str, str]:
    first, sep, rest = name.partition("/")
    if not sep or (
        not any(c in first for c in ".:") and first != "localhost" and first.lower() == first
    ):
        domain, remainder = _DEFAULT_DOMAIN, name
    else:
        domain, remainder = first, rest
    if domain == _LEGACY_DEFAULT_DOMAIN:
        domain = _DEFAULT_DOMAIN
    if domain == _DEFAULT_DOMAIN and "/" not in remainder:
        remainder = _OFFICIAL_REPO_PREFIX + remainder
    return domain, remainder


def parse_docker_ref(ref: str) -> Reference:
    """Parse and normalize an image reference, defaulting the tag to latest.

    Raises ValueError for a malformed reference.
    """
    if _ANCHORED_ID_RE.fullmatch(ref):
        raise ValueError(
            f"invalid repository name ({ref}), cannot specify 64-byte hexadecimal strings"
        )
    domain, remainder = _split_docker_domain(ref)
    remote_name = remainder.split(":", 1)[0]
    if remote_name.lower() != remote_name:
        raise ValueError("invalid reference format: repository name must be lowercase")

    match = _REFERENCE_RE.fullmatch(f"{domain}/{remainder}")
    if match is None:
        raise ValueError(f"invalid reference format: {ref!r}")

    domain, path = match.group("domain"), match.group("path")
    if len(domain) + 1 + len(path) > _NAME_TOTAL_LENGTH_MAX:
        raise ValueError(
            f"repository name must not be more than {_NAME_TOTAL_LENGTH_MAX} characters"
        )

    tag, digest = match.group("tag"), match.group("digest")
    if digest:
        tag = None
    elif tag is None:
        tag = _DEFAULT_TAG
    return Reference(domain=domain, path=path, tag=tag, digest=digest)


def convert_to_vpc_host(registry_host: str) -> str:
    """Append -vpc to the first label of a registry host unless already there."""
    parts = registry_host.split(".")
    if parts[0].endswith("-vpc"):
        return registry_host
    parts[0] = f"{parts[0]}-vpc"
    return ".".join(parts)


def parse_image(image_id: str) -> Image:
    """Split an image reference into registry host and repository."""
    ref = parse_docker_ref(image_id)
    return Image(host=ref.domain, repo=ref.path)
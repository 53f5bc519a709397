from __future__ import annotations

import ipaddress
import re
import socket
from urllib.parse import urlparse

from dubbing.config import Settings
from dubbing.errors import InvalidRequestError
from dubbing.schemas import TranslateRequest


_SOURCE_LANGUAGE_RE = re.compile(r"^[a-z]{2}(-[A-Z]{2})?$")


def _is_loopback_hostname(host: str) -> bool:
    safe = str(host or "").strip().lower()
    if not safe:
        return False
    return safe in {"localhost", "ip6-localhost"} or safe.endswith(".localhost")


def _is_blocked_ip(ip_text: str) -> bool:
    try:
        ip_obj = ipaddress.ip_address(str(ip_text or "").strip())
    except ValueError:
        return False
    return bool(
        ip_obj.is_loopback
        or ip_obj.is_private
        or ip_obj.is_link_local
        or ip_obj.is_reserved
        or ip_obj.is_unspecified
        or ip_obj.is_multicast
    )


def _resolve_host_ips(host: str) -> set[str]:
    safe_host = str(host or "").strip()
    if not safe_host:
        return set()
    try:
        addresses = socket.getaddrinfo(safe_host, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        return set()
    resolved: set[str] = set()
    for item in addresses:
        sockaddr = item[4]
        if not isinstance(sockaddr, tuple) or not sockaddr:
            continue
        ip_text = str(sockaddr[0] or "").strip()
        if ip_text:
            resolved.add(ip_text)
    return resolved


def evaluate_webhook_url_policy(url: str) -> str:
    """Return ``"ok"`` or the reason the webhook destination is refused."""
    parsed = urlparse(str(url or "").strip())
    if parsed.scheme.lower() not in {"http", "https"}:
        return "webhook_scheme_not_allowed"
    host = str(parsed.hostname or "").strip().lower()
    if not host:
        return "webhook_host_missing"
    if _is_loopback_hostname(host):
        return "webhook_loopback_not_allowed"
    if _is_blocked_ip(host):
        return "webhook_private_ip_not_allowed"
    for resolved_ip in _resolve_host_ips(host):
        if _is_blocked_ip(resolved_ip):
            return "webhook_dns_private_ip_not_allowed"
    return "ok"


def validate_video_url(url: str) -> str:
    safe = str(url or "").strip()
    if not safe:
        raise InvalidRequestError("videoUrl is required")
    parsed = urlparse(safe)
    scheme = parsed.scheme.lower()
    if scheme == "oss":
        if not parsed.netloc or not parsed.path.lstrip("/"):
            raise InvalidRequestError("videoUrl must look like oss://bucket/key")
        return safe
    if scheme == "https":
        if not parsed.hostname:
            raise InvalidRequestError("videoUrl host is missing")
        return safe
    raise InvalidRequestError("videoUrl must use oss:// or https://")


def validate_target_languages(languages: list[str], settings: Settings) -> list[str]:
    if not languages:
        raise InvalidRequestError("targetLanguages must contain at least one language")
    normalized: list[str] = []
    for language in languages:
        safe = str(language or "").strip().lower()
        if not settings.is_language_supported(safe):
            raise InvalidRequestError(
                f"unsupported target language: {language} (supported: {', '.join(settings.supported_language_list)})"
            )
        if safe in normalized:
            raise InvalidRequestError(f"duplicate target language: {safe}")
        normalized.append(safe)
    return normalized


def validate_translate_request(request: TranslateRequest, settings: Settings) -> TranslateRequest:
    """Check a parsed request and return a normalized copy, raising InvalidRequestError on the first problem."""
    video_url = validate_video_url(request.video_url)
    languages = validate_target_languages(list(request.target_languages), settings)
    source_language = str(request.source_language or "").strip()
    if source_language and not _SOURCE_LANGUAGE_RE.match(source_language):
        raise InvalidRequestError("sourceLanguage must look like 'en' or 'en-US'")
    webhook_url = str(request.webhook_url or "").strip()
    if webhook_url:
        reason = evaluate_webhook_url_policy(webhook_url)
        if reason != "ok":
            raise InvalidRequestError(f"webhookUrl rejected: {reason}")
    return request.model_copy(
        update={
            "video_url": video_url,
            "target_languages": languages,
            "source_language": source_language or None,
            "webhook_url": webhook_url or None,
        }
    )

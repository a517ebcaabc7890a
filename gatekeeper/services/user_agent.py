"""
User agent bot classification and client identifier extraction.

Classification runs four ordered layers, first match wins:

1. Missing header: automated, block.
2. Allowlisted crawler (search engines, link previews): identified, let through.
3. Blocklisted automation signature: automated, block.
4. No browser engine token: probably automated, block with medium confidence.

Everything here is pure; nothing touches the counter store.
"""
from typing import Iterable, Mapping, Optional

from ..core.config import get_settings
from ..domain.bot_detection import Classification, Confidence

UNKNOWN_IDENTIFIER = "unknown"

BOT_USER_AGENTS = (
    # HTTP clients and command line tools
    "curl",
    "wget",
    "python-requests",
    "java/",
    "go-http-client",
    "apache-httpclient",
    # Headless browsers
    "headless",
    "phantomjs",
    "selenium",
    "puppeteer",
    "playwright",
    # Automation frameworks
    "scrapy",
    "aiohttp",
    "axios/",
    "got/",
    "node-fetch",
    "httpx/",
    "requests/",
    # Scanners and exploitation tools
    "masscan",
    "nmap",
    "nikto",
    "sqlmap",
    "acunetix",
    "metasploit",
    # AI training and answer-engine crawlers
    "gptbot",
    "claudebot",
    "google-extended",
    "meta-externalagent",
    "perplexitybot",
    "anthropic-ai",
    "claude-web",
    "cohere-ai",
    "amazonbot",
    "applebot-extended",
    "ccbot",
    "bytespider",
    "oai-searchbot",
    "chatgpt-user",
    # Generic
    "bot",
    "crawler",
    "spider",
    "scraper",
    "scan",
)

SEO_CRAWLERS_ALLOWLIST = (
    "googlebot",
    "bingbot",
    "baiduspider",
    "duckduckbot",
    "yandexbot",
    "slurp",  # Yahoo
    "facebookexternalhit",
    "twitterbot",
    "linkedinbot",
    "discordbot",
    "ia_archiver",  # Internet Archive
)

BROWSER_PATTERNS = (
    "mozilla",
    "chrome",
    "safari",
    "firefox",
    "edge",
    "opera",
)


def _first_match(haystack: str, needles: Iterable[str]) -> Optional[str]:
    for needle in needles:
        if needle in haystack:
            return needle
    return None


def classify(
    user_agent: Optional[str],
    *,
    allowlist: Iterable[str] = SEO_CRAWLERS_ALLOWLIST,
    blocklist: Iterable[str] = BOT_USER_AGENTS,
    browser_patterns: Iterable[str] = BROWSER_PATTERNS,
) -> Classification:
    """Classify a user agent header value.

    Allowlist matches take precedence over blocklist matches, so a crawler
    such as ``Googlebot`` is let through even though it contains ``bot``.
    Custom token lists are matched case-insensitively like the defaults.
    """
    if not user_agent:
        return Classification(
            is_bot=True,
            should_block=True,
            confidence=Confidence.HIGH,
            reason="missing_user_agent",
        )

    ua = user_agent.lower()

    crawler = _first_match(ua, (token.lower() for token in allowlist))
    if crawler:
        return Classification(
            is_bot=True,
            should_block=False,
            confidence=Confidence.HIGH,
            reason=f"seo_crawler:{crawler}",
        )

    signature = _first_match(ua, (token.lower() for token in blocklist))
    if signature:
        return Classification(
            is_bot=True,
            should_block=True,
            confidence=Confidence.HIGH,
            reason=f"blacklist:{signature}",
        )

    if _first_match(ua, (token.lower() for token in browser_patterns)) is None:
        return Classification(
            is_bot=True,
            should_block=True,
            confidence=Confidence.MEDIUM,
            reason="no_browser_pattern",
        )

    return Classification(is_bot=False, should_block=False, confidence=Confidence.HIGH)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None and not hasattr(headers, "getlist"):
        # Plain dicts are case sensitive; Starlette Headers already is not.
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def get_client_identifier(headers: Mapping[str, str]) -> str:
    """Derive the partition key for a request from its proxy headers.

    Takes the first entry of the forwarding chain, then the real-IP header,
    then falls back to ``"unknown"``. Only meaningful behind a trusted
    reverse proxy; never use it as an authentication signal.
    """
    settings = get_settings()

    forwarded_for = _header(headers, settings.forwarded_for_header)
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = _header(headers, settings.real_ip_header)
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return UNKNOWN_IDENTIFIER


def get_user_agent(headers: Mapping[str, str]) -> Optional[str]:
    return _header(headers, "user-agent")

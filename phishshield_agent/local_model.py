"""
Local URL and page-content heuristics, always available without the network.

Each rule is a row of (signal, weight, predicate) tiers evaluated in table
order; a rule contributes its first matching tier at most once. Scores start
at BASE_SCORE (CONTENT_BASE_SCORE for page content), the weights are
additive and the result is capped at MAX_SCORE. The weights are fixed constants: stored scans and reports from
older versions compare against them.
"""

from __future__ import annotations

import ipaddress
import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import SplitResult, parse_qsl, quote

from .domains import safe_urlsplit, strip_www
from .models import AnalysisPayload, FormInfo, ScoreRecord

BASE_SCORE = 0.06
MAX_SCORE = 0.98

SHORTENERS = frozenset({
    "bit.ly",
    "tinyurl.com",
    "t.co",
    "goo.gl",
    "ow.ly",
    "cutt.ly",
    "buff.ly",
    "is.gd",
    "soo.gd",
    "s.id",
    "rebrand.ly",
})

SUSPICIOUS_TLDS = frozenset({
    "tk", "ml", "ga", "cf", "gq", "xyz", "top", "zip", "mov", "cam", "cfd", "gdn",
    "icu", "link", "click", "work", "support", "monster", "stream", "bond", "loan",
    "life", "asia",
})

SUSPICIOUS_QUERY_KEYS = frozenset({
    "redirect",
    "redirect_url",
    "url",
    "next",
    "target",
    "dest",
    "destination",
    "continue",
    "return",
    "session",
    "token",
    "auth",
    "login",
})

# Order matters: only the first keyword found in the URL is reported.
SUSPICIOUS_WORDS = (
    "login",
    "signin",
    "secure",
    "account",
    "verify",
    "update",
    "wallet",
    "bank",
    "payment",
    "otp",
    "password",
    "refund",
)

_DIGIT_RE = re.compile(r"\d")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)
_SCHEME_PREFIX_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_DEFAULT_PORTS = {"http": 80, "https": 443}

# Characters left as-is when serializing each href component, as a browser
# would; existing %-escapes are kept.
_PATH_SAFE = "/%:@!$&'()*+,;=[]|^\\"
_QUERY_SAFE = "/?%:@!$&()*+,;=[]|^\\{}`"
_FRAGMENT_SAFE = "/?#%:@!$&'()*+,;=[]|^\\{}"


@dataclass(frozen=True)
class UrlFeatures:
    href: str
    scheme: str
    hostname: str
    path: str
    query: str
    port: int | None
    param_keys: tuple[str, ...]
    keyword: str | None

    @property
    def labels(self) -> list[str]:
        return self.hostname.split(".")

    @property
    def tld(self) -> str:
        return self.labels[-1] or ""

    @property
    def subdomain_count(self) -> int:
        return max(0, len(self.labels) - 2)

    @property
    def dash_count(self) -> int:
        return self.hostname.count("-")

    @property
    def digit_count(self) -> int:
        return len(_DIGIT_RE.findall(self.hostname))

    @property
    def digit_ratio(self) -> float:
        return self.digit_count / len(self.hostname) if self.hostname else 0.0

    @property
    def entropy(self) -> float:
        return shannon_entropy(self.hostname)


def shannon_entropy(value: str) -> float:
    cleaned = _NON_ALNUM_RE.sub("", value or "")
    if not cleaned:
        return 0.0
    length = len(cleaned)
    entropy = 0.0
    for count in Counter(cleaned).values():
        p = count / length
        entropy -= p * math.log2(p)
    return entropy


def is_ip_address(hostname: str) -> bool:
    if not hostname:
        return False
    try:
        ipaddress.ip_address(hostname.strip("[]"))
        return True
    except ValueError:
        return False


def _ascii_hostname(hostname: str) -> str:
    # Internationalized names are scored in their punycode form.
    try:
        return hostname.encode("idna").decode("ascii")
    except UnicodeError:
        return hostname


def _href(parsed: SplitResult, host: str, port: int | None, path: str, query: str) -> str:
    scheme = parsed.scheme.lower()
    userinfo = parsed.netloc.rpartition("@")[0] if "@" in parsed.netloc else ""
    netloc = f"[{host}]" if ":" in host else host
    if port is not None:
        netloc = f"{netloc}:{port}"
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    href = f"{scheme}://{netloc}{path}{query}"
    if parsed.fragment:
        href += "#" + quote(parsed.fragment, safe=_FRAGMENT_SAFE)
    return href


def extract_features(parsed: SplitResult) -> UrlFeatures:
    scheme = parsed.scheme.lower()
    host = _ascii_hostname(parsed.hostname or "")
    port = parsed.port
    if port is not None and _DEFAULT_PORTS.get(scheme) == port:
        port = None
    path = quote(parsed.path, safe=_PATH_SAFE) or "/"
    query = "?" + quote(parsed.query, safe=_QUERY_SAFE) if parsed.query else ""
    href = _href(parsed, host, port, path, query)
    keys = tuple(k for k, _ in parse_qsl(parsed.query, keep_blank_values=True))
    href_lower = href.lower()
    keyword = next((w for w in SUSPICIOUS_WORDS if w in href_lower), None)
    return UrlFeatures(
        href=href,
        scheme=scheme,
        hostname=strip_www(host),
        path=path,
        query=query,
        port=port,
        param_keys=keys,
        keyword=keyword,
    )


@dataclass(frozen=True)
class Tier:
    signal: str
    weight: float
    predicate: Callable[[Any], bool]


@dataclass(frozen=True)
class Rule:
    name: str
    tiers: tuple[Tier, ...]

    def evaluate(self, subject: Any) -> Tier | None:
        for tier in self.tiers:
            if tier.predicate(subject):
                return tier
        return None


def _rule(name: str, *tiers: tuple[str, float, Callable[[Any], bool]]) -> Rule:
    return Rule(name=name, tiers=tuple(Tier(s, w, p) for s, w, p in tiers))


RULES: tuple[Rule, ...] = (
    _rule("ip", ("ip address in url", 0.28, lambda f: is_ip_address(f.hostname))),
    _rule("at_symbol", ("@ symbol in url", 0.20, lambda f: "@" in f.href)),
    _rule("shortener", ("url shortener", 0.22, lambda f: f.hostname in SHORTENERS)),
    _rule("punycode", ("punycode domain", 0.18, lambda f: "xn--" in f.hostname)),
    _rule("risky_tld", ("risky tld", 0.18, lambda f: f.tld in SUSPICIOUS_TLDS)),
    _rule("dash", ("dash in domain", 0.08, lambda f: "-" in f.hostname)),
    _rule("many_dashes", ("many dashes", 0.08, lambda f: f.dash_count >= 4)),
    _rule(
        "double_slash",
        ("redirecting slashes", 0.12, lambda f: "//" in _SCHEME_PREFIX_RE.sub("", f.href, count=1)),
    ),
    _rule("subdomains", ("many subdomains", 0.14, lambda f: f.subdomain_count >= 3)),
    _rule(
        "url_length",
        ("very long url", 0.18, lambda f: len(f.href) > 115),
        ("long url", 0.10, lambda f: len(f.href) > 75),
    ),
    _rule(
        "domain_length",
        ("very long domain", 0.14, lambda f: len(f.hostname) > 40),
        ("long domain", 0.10, lambda f: len(f.hostname) > 30),
    ),
    _rule("path_length", ("long path", 0.08, lambda f: len(f.path) > 35)),
    _rule(
        "query_length",
        ("very long query", 0.18, lambda f: len(f.query) > 140),
        ("long query", 0.12, lambda f: len(f.query) > 80),
    ),
    _rule(
        "param_count",
        ("many parameters", 0.12, lambda f: len(f.param_keys) >= 6),
        ("multiple parameters", 0.08, lambda f: len(f.param_keys) >= 3),
    ),
    _rule(
        "redirect_param",
        (
            "suspicious redirect param",
            0.12,
            lambda f: any(k.lower() in SUSPICIOUS_QUERY_KEYS for k in f.param_keys),
        ),
    ),
    _rule("http_token", ("http token in path", 0.10, lambda f: "http" in (f.path + f.query).lower())),
    _rule("port", ("nonstandard port", 0.10, lambda f: f.port is not None and f.port not in (80, 443))),
    _rule("non_https", ("non-https", 0.05, lambda f: f.scheme != "https")),
    _rule(
        "digits",
        ("digit-heavy domain", 0.12, lambda f: f.digit_ratio >= 0.3),
        ("many digits in domain", 0.06, lambda f: f.digit_count >= 4),
    ),
    _rule(
        "entropy",
        ("random-looking domain", 0.14, lambda f: f.entropy >= 4),
        ("high entropy domain", 0.10, lambda f: f.entropy >= 3.5),
    ),
    _rule("keyword", ("keyword: {f.keyword}", 0.08, lambda f: f.keyword is not None)),
)


def label_for(score: float) -> str:
    if score >= 0.7:
        return "phishing"
    if score >= 0.4:
        return "suspicious"
    return "legitimate"


def _apply_rules(rules: tuple[Rule, ...], subject: Any, base: float) -> tuple[float, list[str]]:
    score = base
    signals: list[str] = []
    for rule in rules:
        tier = rule.evaluate(subject)
        if tier is None:
            continue
        score += tier.weight
        signals.append(tier.signal.format(f=subject))
    return min(MAX_SCORE, score), signals


def score_features(features: UrlFeatures) -> tuple[float, list[str]]:
    return _apply_rules(RULES, features, BASE_SCORE)


# Page content collected alongside the URL: visible text, link targets and
# form summaries. Scored with its own table when the remote model is down.
CONTENT_BASE_SCORE = 0.12

_CREDENTIAL_RE = re.compile(
    r"\b(?:otp|one time password|verification code|pin|password|login|signin)", re.IGNORECASE
)
_URGENCY_RE = re.compile(
    r"\b(?:bank|account|kyc|suspend|blocked|verify|update|refund|reward|lottery|gift)", re.IGNORECASE
)
_PAYMENT_RE = re.compile(
    r"\b(?:upi|paytm|gpay|phonepe|bhim|netbank|ifsc|wallet|debit|credit)", re.IGNORECASE
)
_LINK_PUSH_RE = re.compile(r"\b(?:click|tap|open|link|download|install)", re.IGNORECASE)


def _link_host(link: str) -> str:
    parsed = safe_urlsplit(link)
    return strip_www(parsed.hostname or "") if parsed is not None else ""


@dataclass(frozen=True)
class PageContent:
    text: str
    links: tuple[str, ...]
    forms: tuple[FormInfo, ...]

    @classmethod
    def from_payload(cls, payload: AnalysisPayload) -> "PageContent":
        text = " ".join(part.strip() for part in (payload.title, payload.text) if part and part.strip())
        links = tuple(link.strip() for link in payload.links if link and link.strip())
        return cls(text=text, links=links, forms=tuple(payload.forms))

    @property
    def is_empty(self) -> bool:
        return not (self.text or self.links or self.forms)

    @property
    def has_shortened_links(self) -> bool:
        return any(_link_host(link) in SHORTENERS for link in self.links)

    @property
    def has_insecure_links(self) -> bool:
        return any(link.lower().startswith("http://") for link in self.links)

    @property
    def has_sensitive_form(self) -> bool:
        return any(form.sensitive for form in self.forms)


CONTENT_RULES: tuple[Rule, ...] = (
    _rule("credential_bait", ("credential bait", 0.28, lambda c: bool(_CREDENTIAL_RE.search(c.text)))),
    _rule("account_urgency", ("account urgency", 0.22, lambda c: bool(_URGENCY_RE.search(c.text)))),
    _rule("payment_lure", ("payment lure", 0.20, lambda c: bool(_PAYMENT_RE.search(c.text)))),
    _rule("link_push", ("link push", 0.12, lambda c: bool(_LINK_PUSH_RE.search(c.text)))),
    _rule("shortened_links", ("shortened links", 0.18, lambda c: c.has_shortened_links)),
    _rule("insecure_links", ("insecure links", 0.14, lambda c: c.has_insecure_links)),
    _rule("sensitive_form", ("sensitive form", 0.15, lambda c: c.has_sensitive_form)),
)


def score_content(content: PageContent) -> tuple[float, list[str]]:
    return _apply_rules(CONTENT_RULES, content, CONTENT_BASE_SCORE)


def local_content_score(payload: AnalysisPayload) -> ScoreRecord | None:
    """Score the page text, links and forms; None when the payload carries none."""
    content = PageContent.from_payload(payload)
    if content.is_empty:
        return None
    score, signals = score_content(content)
    return ScoreRecord(score=score, label=label_for(score), signals=signals, source="heuristic")


def local_url_score(payload: AnalysisPayload) -> ScoreRecord:
    parsed = safe_urlsplit(payload.url)
    if parsed is None:
        return ScoreRecord(score=0.0, label="unknown", signals=["invalid url"], source="local")

    score, signals = score_features(extract_features(parsed))
    return ScoreRecord(score=score, label=label_for(score), signals=signals, source="local")

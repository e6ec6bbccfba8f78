#!/usr/bin/env python3
from __future__ import annotations

import contextlib
import dataclasses
import ipaddress
import logging
import re
from typing import Iterable, List, Sequence, Set, Tuple

DEFAULT_BLOCK_LIST = (
    "facebook.com",
    "twitter.com",
    "instagram.com",
    "youtube.com",
)

# Broad deny list used in whitelist mode before the allow-list is subtracted.
DEFAULT_WHITELIST_BLOCK_LIST = (
    "facebook.com",
    "twitter.com",
    "instagram.com",
    "youtube.com",
    "reddit.com",
    "tiktok.com",
)

DEFAULT_APP_BLOCK_LIST = (
    "slack.exe",
    "discord.exe",
)

# Old config files listed full hosts lines such as "127.0.0.1 facebook.com".
REDIRECT_PREFIX = re.compile(r"^(?:127\.0\.0\.1|0\.0\.0\.0|::1?)\s+")


def normalize_domain(domain: str) -> str:
    """Normalize a domain string to a bare hostname.
    - strips a leading hosts-style redirect address
    - strips scheme (http/https), path/query/fragment/port
    - lowercases
    - removes a trailing dot
    - preserves IP literals as-is
    """
    d = REDIRECT_PREFIX.sub("", domain.strip()).lower()
    d = re.sub(r"^([a-z][a-z0-9+.-]*://)", "", d)
    d = d.split('/')[0]
    d = d.split('#')[0]
    d = d.split('?', 1)[0]

    with contextlib.suppress(ValueError):
        ipaddress.ip_address(d)
        return d

    if ':' in d:
        d = d.split(':', 1)[0]

    if d.endswith('.'):
        d = d[:-1]
    return d


def is_subdomain(domain: str) -> bool:
    labels = domain.split('.')
    # Heuristic only: 3+ labels = subdomain, but exclude www.example.com
    return len(labels) >= 3 and not domain.startswith('www.')


def expand_www_variants(domains: Iterable[str]) -> List[str]:
    """Return unique domains, each base domain followed by its www. variant.
    Subdomains like blog.example.com are left as-is. Order of first
    appearance is kept so the hosts block reads like the config.
    """
    expanded: List[str] = []
    seen: Set[str] = set()
    for d in domains:
        nd = normalize_domain(d)
        if not nd:
            continue
        candidates = [nd]
        if "." in nd and not nd.startswith("www.") and not is_subdomain(nd):
            candidates.append(f"www.{nd}")
        for c in candidates:
            if c not in seen:
                seen.add(c)
                expanded.append(c)
    return expanded


def clean_domains(domains: Iterable[str]) -> List[str]:
    cleaned: List[str] = []
    for d in domains:
        nd = normalize_domain(d)
        if nd and nd not in cleaned:
            cleaned.append(nd)
    return cleaned


@dataclasses.dataclass(frozen=True)
class Blocklist:
    """Domains, applications and allow-listed domains for one session."""

    domains: Tuple[str, ...] = ()
    apps: Tuple[str, ...] = ()
    allow: Tuple[str, ...] = ()
    broad_domains: Tuple[str, ...] = ()

    @classmethod
    def from_config(
        cls,
        block_list: Sequence[str] = DEFAULT_BLOCK_LIST,
        app_block_list: Sequence[str] = DEFAULT_APP_BLOCK_LIST,
        whitelist: Sequence[str] = (),
        whitelist_block_list: Sequence[str] = DEFAULT_WHITELIST_BLOCK_LIST,
        expand_www: bool = True,
    ) -> "Blocklist":
        prepare = expand_www_variants if expand_www else clean_domains
        domains = prepare(block_list)
        apps = [a.strip() for a in app_block_list if a.strip()]
        logging.info(f"Loaded {len(domains)} domains and {len(apps)} applications to block")
        return cls(
            domains=tuple(domains),
            apps=tuple(apps),
            allow=tuple(expand_www_variants(whitelist)),
            broad_domains=tuple(prepare(whitelist_block_list)),
        )

    def deny_set(self, whitelist_mode: bool = False) -> Tuple[str, ...]:
        """Domains to redirect for the chosen blocking strategy"""
        if not whitelist_mode:
            return self.domains
        allowed = set(self.allow)
        return tuple(d for d in self.broad_domains if d not in allowed)

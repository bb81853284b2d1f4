"""Recognize anti-bot challenges, login walls and traffic-detection pages."""
from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlsplit

# Status codes that marketplaces use for bot throttling.
BLOCK_STATUS_CODES = {403, 429}

LOGIN_WALL_PATTERNS = re.compile(
    r"(passport\.|login\.|/login|/signin|sign-in|/newlogin|member/signin|/punish)",
    re.IGNORECASE,
)

# Markers seen on Alibaba-group slider checks, Cloudflare/Akamai pages and
# generic captcha interstitials.
CHALLENGE_FINGERPRINTS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"x5secdata",
        r"_____tmd_____",
        r"punish\?x5",
        r"nc_1_n1z|slide to verify|please slide to verify",
        r"unusual traffic",
        r"captcha",
        r"cf-chl-|challenge-platform|Just a moment\.\.\.",
        r"<title>\s*Access Denied\s*</title>",
        r"Request unsuccessful\. Incapsula",
        r"verify you are (a )?human",
    )
]

# Large product pages sometimes mention "captcha" in an inline script; only
# short bodies are fingerprinted.
MAX_CHALLENGE_BODY = 60_000


def classify_block(status_code: int, final_url: str, html: Optional[str]) -> Optional[str]:
    """Return a short reason if the response looks blocked, else None.

    Parameters
    ----------
    status_code : int
        HTTP status of the final response
    final_url : str
        URL after redirects
    html : str, optional
        Response body

    Returns
    -------
    str or None
        ``"status_403"``, ``"login_wall"``, ``"fingerprint:<pattern>"`` or None
    """
    body = html or ""
    if status_code in BLOCK_STATUS_CODES:
        return f"status_{status_code}"

    parts = urlsplit(final_url or "")
    if LOGIN_WALL_PATTERNS.search(f"{parts.netloc}{parts.path}"):
        return "login_wall"

    if status_code == 503 and _matches_fingerprint(body):
        return "status_503_challenge"

    if len(body) <= MAX_CHALLENGE_BODY:
        matched = _matches_fingerprint(body)
        if matched:
            return f"fingerprint:{matched}"
    return None


def _matches_fingerprint(body: str) -> Optional[str]:
    for pattern in CHALLENGE_FINGERPRINTS:
        if pattern.search(body):
            return pattern.pattern
    return None

# agentauth/doctor.py
"""Look for credentials that leaked into an agent's environment.

Agents should only ever see the proxy URL; a real key sitting in their
environment defeats the point of running behind agentauth.
"""
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_SECRET_NAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"key$",
        r"token$",
        r"secret$",
        r"password$",
        r"credential",
        r"^auth",
        r"_auth$",
        r"api.?key",
        r"bearer",
        r"private",
    )
]

# Checked before the name patterns: a value match is the stronger signal.
_SECRET_VALUE_PATTERNS = [
    (re.compile(r"^sk-ant-"), "Anthropic API key"),
    (re.compile(r"^sk-"), "OpenAI API key"),
    (re.compile(r"^ghp_"), "GitHub PAT"),
    (re.compile(r"^gho_"), "GitHub OAuth token"),
    (re.compile(r"^ghs_"), "GitHub App token"),
    (re.compile(r"^github_pat_"), "GitHub fine-grained PAT"),
    (re.compile(r"^Bearer\s+"), "Bearer token"),
    (re.compile(r"^AKIA"), "AWS access key"),
    (re.compile(r"^xoxb-"), "Slack bot token"),
    (re.compile(r"^xoxp-"), "Slack user token"),
    (re.compile(r"^eyJ"), "JWT token"),
]

_SAFE_VALUES = {"proxy-managed", "placeholder", "none", "disabled", "false", ""}

_SAFE_NAMES = {
    "TERM",
    "COLORTERM",
    "SSH_AUTH_SOCK",
    "GPG_AGENT_INFO",
    "DBUS_SESSION_BUS_ADDRESS",
    "XDG_SESSION_TYPE",
    "TOKENIZERS_PARALLELISM",
}


@dataclass(frozen=True)
class Finding:
    name: str
    redacted: str
    reason: str


def redact(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:4] + "***"


def _identify_value(value: str) -> str | None:
    for pattern, label in _SECRET_VALUE_PATTERNS:
        if pattern.search(value):
            return label
    return None


def _is_suspect_name(name: str) -> bool:
    if name in _SAFE_NAMES:
        return False
    return any(p.search(name) for p in _SECRET_NAME_PATTERNS)


def scan_environment(environ: Mapping[str, str] | None = None) -> list[Finding]:
    env = os.environ if environ is None else environ
    findings: list[Finding] = []

    for name, value in env.items():
        if not value or value.lower() in _SAFE_VALUES:
            continue

        label = _identify_value(value)
        if label:
            findings.append(Finding(name, redact(value), label))
        elif _is_suspect_name(name):
            findings.append(Finding(name, redact(value), "name matches secret pattern"))

    return findings


def report(findings: list[Finding]) -> None:
    if not findings:
        logger.info("Environment clean: no exposed secrets detected.")
        return

    logger.warning("Potential secrets found in environment:")
    for f in findings:
        logger.warning("  %s = %s  (%s)", f.name, f.redacted, f.reason)
    logger.warning("These should be injected by the agentauth proxy, not passed to agents directly.")

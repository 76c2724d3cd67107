# core/spam_scorer.py
"""
Deterministic spam heuristic for user-to-user messages.

The score is a weighted sum over subject + body:
- every hyperlink beyond max_links
- very short bodies
- each known spam/phishing phrase (case-insensitive substring)
- a long run of one repeated character
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

SPAM_PHRASES = (
    # phishing indicators
    'urgent action required',
    'verify your account immediately',
    'click here now',
    'limited time offer',
    'congratulations you have won',
    'claim your prize',
    'suspended account',
    'confirm your identity',
    'update payment information',
    # classic spam
    'free money',
    'buy now',
    'act now',
    'work from home',
    'double your income',
    'risk-free',
    'no credit check',
    'crypto giveaway',
    'wire transfer',
)

LINK_PATTERN = re.compile(r'(?:https?://|www\.)\S+', re.IGNORECASE)


@dataclass(frozen=True)
class SpamPolicy:
    max_links: int = 3
    link_weight: float = 5.0
    short_body_length: int = 4
    short_body_weight: float = 1.0
    phrases: Tuple[str, ...] = SPAM_PHRASES
    phrase_weight: float = 2.0
    repeat_run: int = 10
    repeat_weight: float = 2.0
    threshold: float = 5.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SpamPolicy':
        return cls(
            max_links=int(config.get('SPAM_MAX_LINKS', cls.max_links)),
            link_weight=float(config.get('SPAM_LINK_WEIGHT', cls.link_weight)),
            short_body_length=int(config.get('SPAM_SHORT_BODY_LENGTH', cls.short_body_length)),
            phrase_weight=float(config.get('SPAM_PHRASE_WEIGHT', cls.phrase_weight)),
            repeat_run=int(config.get('SPAM_REPEAT_RUN', cls.repeat_run)),
            threshold=float(config.get('SPAM_THRESHOLD', cls.threshold)),
        )


@dataclass
class SpamReport:
    score: float
    reasons: List[str] = field(default_factory=list)


class SpamScorer:

    def __init__(self, policy: SpamPolicy = SpamPolicy()):
        self.policy = policy
        self._repeat = re.compile(r'(\S)\1{%d,}' % (policy.repeat_run - 1))

    def report(self, subject: str, body: str) -> SpamReport:
        policy = self.policy
        text = f"{subject or ''}\n{body or ''}"
        lowered = text.lower()
        report = SpamReport(score=0.0)

        links = len(LINK_PATTERN.findall(text))
        if links > policy.max_links:
            report.score += policy.link_weight * (links - policy.max_links)
            report.reasons.append(f"links:{links}")

        if len((body or '').strip()) < policy.short_body_length:
            report.score += policy.short_body_weight
            report.reasons.append("short_body")

        for phrase in policy.phrases:
            if phrase in lowered:
                report.score += policy.phrase_weight
                report.reasons.append(f"phrase:{phrase}")

        if self._repeat.search(text):
            report.score += policy.repeat_weight
            report.reasons.append("repeated_chars")

        return report

    def score(self, subject: str, body: str) -> float:
        return self.report(subject, body).score

    def is_spam(self, score: float) -> bool:
        return score >= self.policy.threshold

"""
Extraction Engine - Structured Signals From Message Text
Version: 1.0

Rule-driven analyzer that turns one message body into ExtractedInformation.
Pure with respect to the store: it only reads the ExtractionRules value it
was built with, so the same text and rules always give the same result.

DEPENDS ON: rules.py, phone.py, metrics.py
"""

import logging
import re
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from services.metrics import EXTRACTIONS_TOTAL
from services.phone import normalize_phone
from services.rules import ExtractionRules, max_severity

logger = logging.getLogger(__name__)

URGENCY_BY_SEVERITY = {
    "critical": "emergency",
    "high": "high",
    "medium": "medium",
}

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class ContactInfo:
    phones: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)


@dataclass
class AddressMatch:
    text: str
    address_type: str  # service / billing / mailing
    confidence: float = 0.8


@dataclass
class ServiceTypeMatch:
    service_type: str
    confidence: float
    matched_keywords: List[str] = field(default_factory=list)


@dataclass
class UrgencyIndicator:
    keyword: str
    severity: str
    category: str
    context: str
    confidence: float = 0.9


@dataclass
class SchedulingRequest:
    request_type: str  # specific / range / asap / flexible
    text: str
    day_of_week: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


@dataclass
class ProblemInfo:
    keywords: List[str] = field(default_factory=list)
    symptoms: List[str] = field(default_factory=list)
    description: Optional[str] = None


@dataclass
class FollowUpInfo:
    is_follow_up: bool = False
    job_references: List[str] = field(default_factory=list)
    quote_references: List[str] = field(default_factory=list)


@dataclass
class ExtractedInformation:
    """Everything the engine could read out of one message."""
    parser_version: str
    customer_name: Optional[str] = None
    contact: ContactInfo = field(default_factory=ContactInfo)
    addresses: List[AddressMatch] = field(default_factory=list)
    service_types: List[ServiceTypeMatch] = field(default_factory=list)
    urgency_level: str = "low"
    urgency_indicators: List[UrgencyIndicator] = field(default_factory=list)
    scheduling_requests: List[SchedulingRequest] = field(default_factory=list)
    problem: ProblemInfo = field(default_factory=ProblemInfo)
    sentiment: str = "neutral"
    sentiment_score: float = 0.0
    communication_style: str = "casual"
    is_business_customer: bool = False
    is_property_manager: bool = False
    is_emergency_contact: bool = False
    follow_up: FollowUpInfo = field(default_factory=FollowUpInfo)
    message_quality: str = "clear"
    requires_human_review: bool = False
    confidence_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def fallback(cls, parser_version: str) -> "ExtractedInformation":
        """Safe record used when extraction blows up."""
        return cls(
            parser_version=parser_version,
            urgency_level="medium",
            sentiment="neutral",
            communication_style="casual",
            message_quality="unclear",
            requires_human_review=True,
            confidence_score=0.0,
        )


@dataclass
class ParseResult:
    info: ExtractedInformation
    errors: List[Dict[str, Any]]
    processing_ms: int
    parser_version: str

    @property
    def used_fallback(self) -> bool:
        return bool(self.errors)


class ExtractionEngine:
    """
    Fixed pipeline of independent analyzers.

    Each analyzer reads the original and lowercased text and fills one part
    of ExtractedInformation. Confidence and review are derived at the end.
    """

    def __init__(self, rules: ExtractionRules):
        self.rules = rules

    @property
    def version(self) -> str:
        return self.rules.version

    def extract(self, text: str) -> ExtractedInformation:
        """
        Analyze one message body.

        Raises whatever an analyzer raises; use parse() for the
        never-raising variant.
        """
        text = text or ""
        lower = text.lower()

        info = ExtractedInformation(parser_version=self.rules.version)
        info.customer_name = self._extract_name(text)
        info.contact = self._extract_contacts(text)
        info.addresses = self._extract_addresses(text, lower)
        info.service_types = self._detect_service_types(lower)
        info.urgency_indicators = self._analyze_urgency(text, lower)
        info.urgency_level = self._urgency_level(info.urgency_indicators)
        info.scheduling_requests = self._extract_scheduling(text)
        info.problem = self._extract_problem(text, lower)
        info.sentiment = self._analyze_sentiment(lower)
        info.sentiment_score = dict(self.rules.sentiment_scores).get(info.sentiment, 0.0)
        info.communication_style = self._classify_style(text, lower)
        info.is_business_customer = self._contains_any(lower, self.rules.business_keywords)
        info.is_property_manager = self._contains_any(lower, self.rules.property_manager_keywords)
        info.is_emergency_contact = self._contains_any(lower, self.rules.emergency_contact_keywords)
        info.follow_up = self._detect_follow_up(text, lower)
        info.message_quality = self._assess_quality(text, lower)

        self._score(info)
        return info

    def parse(self, text: str) -> ParseResult:
        """
        extract() behind a safety net.

        Never raises. A failing analyzer yields the fallback record plus one
        parsing error so the caller always has something usable.
        """
        started = time.perf_counter()
        errors: List[Dict[str, Any]] = []

        try:
            info = self.extract(text)
        except Exception as e:
            logger.error(f"Extraction failed, using fallback: {e}")
            info = ExtractedInformation.fallback(self.rules.version)
            errors.append({
                "error": str(e),
                "field": "general",
                "context": (text or "")[:100],
            })

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        EXTRACTIONS_TOTAL.labels(
            urgency=info.urgency_level,
            fallback=str(bool(errors)).lower(),
        ).inc()

        return ParseResult(
            info=info,
            errors=errors,
            processing_ms=elapsed_ms,
            parser_version=self.rules.version,
        )

    # ─────────────────────────────────────────────
    # ANALYZERS
    # ─────────────────────────────────────────────

    def _extract_name(self, text: str) -> Optional[str]:
        for pattern in self.rules.name_patterns:
            match = pattern.search(text)
            if not match:
                continue

            words = []
            for word in match.group(1).split():
                if word.lower() in self.rules.name_stoplist:
                    break
                words.append(word)

            if words:
                return " ".join(w.capitalize() for w in words)
        return None

    def _extract_contacts(self, text: str) -> ContactInfo:
        contact = ContactInfo()

        for pattern in self.rules.phone_patterns:
            for match in pattern.finditer(text):
                phone = normalize_phone(match.group(0))
                if phone not in contact.phones:
                    contact.phones.append(phone)

        for pattern in self.rules.email_patterns:
            for match in pattern.finditer(text):
                email = match.group(0).lower()
                if email not in contact.emails:
                    contact.emails.append(email)

        return contact

    def _extract_addresses(self, text: str, lower: str) -> List[AddressMatch]:
        found: List[AddressMatch] = []

        for pattern in self.rules.address_patterns:
            for match in pattern.finditer(text):
                candidate = match.group(0).strip().rstrip(".,")
                # The street-only pattern re-finds the prefix of a full address
                if any(candidate.lower() in a.text.lower() for a in found):
                    continue

                window = lower[max(0, match.start() - 40):match.start()]
                found.append(AddressMatch(
                    text=candidate,
                    address_type=self._address_type(window),
                ))

        return found

    def _address_type(self, window: str) -> str:
        if self._contains_any(window, self.rules.billing_address_keywords):
            return "billing"
        if self._contains_any(window, self.rules.mailing_address_keywords):
            return "mailing"
        return "service"

    def _detect_service_types(self, lower: str) -> List[ServiceTypeMatch]:
        matches = []
        for rule in self.rules.service_types:
            if not any(p.search(lower) for p in rule.patterns):
                continue
            matches.append(ServiceTypeMatch(
                service_type=rule.service_type,
                confidence=rule.confidence / 100,
                matched_keywords=[kw for kw in rule.keywords if kw in lower],
            ))
        return matches

    def _analyze_urgency(self, text: str, lower: str) -> List[UrgencyIndicator]:
        indicators = []
        for rule in self.rules.urgency_rules:
            for match in rule.pattern.finditer(lower):
                start = max(0, match.start() - 20)
                end = min(len(text), match.end() + 20)
                indicators.append(UrgencyIndicator(
                    keyword=match.group(0),
                    severity=rule.severity,
                    category=rule.category,
                    context=text[start:end].strip(),
                ))
        return indicators

    @staticmethod
    def _urgency_level(indicators: List[UrgencyIndicator]) -> str:
        if not indicators:
            return "low"
        severity = max_severity(i.severity for i in indicators)
        return URGENCY_BY_SEVERITY.get(severity, "low")

    def _extract_scheduling(self, text: str) -> List[SchedulingRequest]:
        requests: List[SchedulingRequest] = []
        seen = set()

        for rule in self.rules.time_rules:
            for match in rule.pattern.finditer(text):
                key = (rule.request_type, match.group(0).lower())
                if key in seen:
                    continue
                seen.add(key)

                request = SchedulingRequest(request_type=rule.request_type, text=match.group(0))

                if rule.request_type == "range":
                    request.start_time = match.group(1).strip()
                    request.end_time = match.group(2).strip()

                elif rule.request_type == "specific":
                    day = self.rules.day_of_week_pattern.search(match.group(0))
                    if day:
                        request.day_of_week = day.group(1).lower()
                    clock = self.rules.clock_time_pattern.search(text)
                    if clock:
                        request.start_time = clock.group(1).strip()

                requests.append(request)

        return requests

    def _extract_problem(self, text: str, lower: str) -> ProblemInfo:
        problem = ProblemInfo(
            keywords=[kw for kw in self.rules.problem_keywords if kw in lower],
        )

        for pattern in self.rules.symptom_patterns:
            for match in pattern.finditer(lower):
                if match.group(0) not in problem.symptoms:
                    problem.symptoms.append(match.group(0))

        stripped = text.strip()
        if len(stripped) < self.rules.description_length_limit:
            problem.description = stripped or None
        else:
            for sentence in _SENTENCE_SPLIT.split(stripped):
                sentence = sentence.strip()
                if len(sentence) > 20 and self._contains_any(sentence.lower(), self.rules.problem_keywords):
                    problem.description = sentence
                    break
            else:
                problem.description = stripped[:self.rules.description_length_limit]

        return problem

    def _analyze_sentiment(self, lower: str) -> str:
        for sentiment, keywords in self.rules.sentiment_lexicon:
            if self._contains_any(lower, keywords):
                return sentiment
        return "neutral"

    def _classify_style(self, text: str, lower: str) -> str:
        stripped = text.strip()

        if len(stripped) < 50 or self.rules.brief_reply_pattern.match(stripped.rstrip("!.?")):
            return "brief"
        if self._contains_any(lower, self.rules.formal_indicators):
            return "formal"
        if len(stripped) > 200 and ("\n" in stripped or len(stripped.split(".")) > 3):
            return "detailed"
        return "casual"

    def _detect_follow_up(self, text: str, lower: str) -> FollowUpInfo:
        follow_up = FollowUpInfo()

        for pattern in self.rules.job_reference_patterns:
            follow_up.job_references.extend(
                ref for ref in pattern.findall(text) if ref not in follow_up.job_references
            )
        for pattern in self.rules.quote_reference_patterns:
            follow_up.quote_references.extend(
                ref for ref in pattern.findall(text) if ref not in follow_up.quote_references
            )

        follow_up.is_follow_up = (
            self._contains_any(lower, self.rules.follow_up_keywords)
            or bool(follow_up.job_references)
            or bool(follow_up.quote_references)
        )
        return follow_up

    def _assess_quality(self, text: str, lower: str) -> str:
        stripped = _WHITESPACE.sub(" ", text).strip()

        if len(stripped) < 10:
            return "incomplete"
        if len(self.rules.garbled_run_pattern.findall(lower)) > self.rules.garbled_run_threshold:
            return "garbled"
        if any(p.search(stripped) for p in self.rules.incomplete_patterns):
            return "incomplete"
        if not self._contains_any(lower, self.rules.quality_problem_keywords):
            return "unclear"
        return "clear"

    # ─────────────────────────────────────────────
    # CONFIDENCE & REVIEW
    # ─────────────────────────────────────────────

    @staticmethod
    def _score(info: ExtractedInformation) -> None:
        confidence = 0.5

        if info.message_quality == "clear":
            confidence += 0.2
        elif info.message_quality == "unclear":
            confidence -= 0.1
        elif info.message_quality == "garbled":
            confidence -= 0.3

        if info.service_types:
            confidence += 0.2
        if info.addresses:
            confidence += 0.1
        if info.communication_style == "detailed":
            confidence += 0.1

        # Review is decided on the score before its own penalty
        info.requires_human_review = (
            info.urgency_level == "emergency"
            or info.message_quality in ("unclear", "garbled")
            or confidence < 0.5
            or info.sentiment == "frustrated"
        )
        if info.requires_human_review:
            confidence -= 0.2

        info.confidence_score = round(min(1.0, max(0.0, confidence)), 2)

    @staticmethod
    def _contains_any(text: str, keywords) -> bool:
        return any(kw in text for kw in keywords)

"""
Rule Tables - Keyword and Pattern Configuration
Version: 1.0

Every keyword map and regex used by the extraction engine and the
emergency classifier lives here as one immutable value.

Usage:
    from services.rules import load_rules

    rules = load_rules()                      # built once, cached
    engine = ExtractionEngine(rules.extraction)
    classifier = EmergencyClassifier(rules.classifier)

Tests build alternate tables with dataclasses.replace() and inject them.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Pattern, Tuple


SEVERITY_ORDER: Tuple[str, ...] = ("low", "medium", "high", "critical")


# ═══════════════════════════════════════════════════════════════
# EXTRACTION RULES
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class UrgencyRule:
    """Phrase family mapped to a severity tier."""
    keyword: str
    pattern: Pattern
    severity: str
    category: str


@dataclass(frozen=True)
class ServiceTypeRule:
    """Candidate service type; emitted when any pattern matches."""
    service_type: str
    patterns: Tuple[Pattern, ...]
    confidence: int
    keywords: Tuple[str, ...]


@dataclass(frozen=True)
class TimeRule:
    """Scheduling request pattern."""
    request_type: str  # specific / range / asap / flexible
    pattern: Pattern


@dataclass(frozen=True)
class ExtractionRules:
    version: str
    name_patterns: Tuple[Pattern, ...]
    name_stoplist: frozenset
    phone_patterns: Tuple[Pattern, ...]
    email_patterns: Tuple[Pattern, ...]
    address_patterns: Tuple[Pattern, ...]
    billing_address_keywords: Tuple[str, ...]
    mailing_address_keywords: Tuple[str, ...]
    service_types: Tuple[ServiceTypeRule, ...]
    urgency_rules: Tuple[UrgencyRule, ...]
    time_rules: Tuple[TimeRule, ...]
    day_of_week_pattern: Pattern
    clock_time_pattern: Pattern
    problem_keywords: Tuple[str, ...]
    symptom_patterns: Tuple[Pattern, ...]
    # Checked in order, first match wins
    sentiment_lexicon: Tuple[Tuple[str, Tuple[str, ...]], ...]
    sentiment_scores: Tuple[Tuple[str, float], ...]
    formal_indicators: Tuple[str, ...]
    brief_reply_pattern: Pattern
    business_keywords: Tuple[str, ...]
    property_manager_keywords: Tuple[str, ...]
    emergency_contact_keywords: Tuple[str, ...]
    follow_up_keywords: Tuple[str, ...]
    job_reference_patterns: Tuple[Pattern, ...]
    quote_reference_patterns: Tuple[Pattern, ...]
    quality_problem_keywords: Tuple[str, ...]
    incomplete_patterns: Tuple[Pattern, ...]
    garbled_run_pattern: Pattern
    garbled_run_threshold: int = 2
    description_length_limit: int = 200


# ═══════════════════════════════════════════════════════════════
# CLASSIFIER RULES
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class KeywordRule:
    """Weighted emergency phrase."""
    severity: str
    emergency_type: str
    weight: int


@dataclass(frozen=True)
class ClassifierRules:
    # Insertion order is significant: the first matched phrase names the type
    keyword_table: Tuple[Tuple[str, KeywordRule], ...]
    urgency_phrases: Tuple[str, ...]
    emotional_phrases: Tuple[str, ...]
    quantity_phrases: Tuple[str, ...]
    urgency_phrase_score: float = 0.3
    emotional_phrase_score: float = 0.2
    quantity_phrase_score: float = 0.25
    keyword_multiplier: float = 8.0
    semantic_multiplier: float = 20.0
    context_multiplier: float = 10.0
    history_bonus: float = 10.0
    critical_threshold: float = 80.0
    high_threshold: float = 60.0
    medium_threshold: float = 40.0
    emergency_threshold: float = 40.0
    escalation_threshold: float = 90.0
    # Favors false positives: an isolated "emergency" still counts
    keyword_match_forces_emergency: bool = True
    base_response_minutes: Tuple[Tuple[str, int], ...] = (
        ("critical", 20), ("high", 45), ("medium", 90), ("low", 180),
    )
    after_hours_response_factor: float = 1.3
    priority_high_phrases: Tuple[str, ...] = ()
    history_window_days: int = 365
    recent_window_days: int = 30


@dataclass(frozen=True)
class RuleSet:
    extraction: ExtractionRules
    classifier: ClassifierRules = field(repr=False)


def _rx(pattern: str, flags: int = re.IGNORECASE) -> Pattern:
    return re.compile(pattern, flags)


def default_extraction_rules() -> ExtractionRules:
    return ExtractionRules(
        version="1.0.0",
        name_patterns=(
            _rx(r"(?:this is|my name is|i'?m)\s+([a-zA-Z]+(?:\s+[a-zA-Z]+)?)"),
            re.compile(r"^([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)\s+(?:here|calling)"),
            re.compile(r"\bfrom\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"),
        ),
        name_stoplist=frozenset({
            "calling", "here", "there", "today", "tomorrow", "about", "regarding",
            "not", "so", "very", "just", "still", "going", "having", "trying",
            "looking", "frustrated", "worried", "sorry", "back", "the", "a", "an",
            "urgent", "in", "at", "home", "out", "and", "but", "with", "my", "your", "from",
        }),
        phone_patterns=(
            re.compile(r"(?<!\d)(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}(?!\d)"),
        ),
        email_patterns=(
            re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        ),
        address_patterns=(
            _rx(r"\b\d+\s+[A-Za-z0-9 ]+?,\s*[A-Za-z ]+,\s*[A-Z]{2}\s+\d{5}\b"),
            _rx(r"\b\d+\s+(?:[A-Za-z0-9]+\s+){1,4}?(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Boulevard|Blvd|Circle|Cir|Court|Ct)\b\.?"),
        ),
        billing_address_keywords=("billing", "bill to", "invoice"),
        mailing_address_keywords=("mailing", "mail it", "mail to", "po box"),
        service_types=(
            ServiceTypeRule("drain_cleaning", (_rx(r"\b(drain|clog|clogged|slow drain|backup|snake)\b"),), 85,
                            ("drain", "clog", "backup", "snake")),
            ServiceTypeRule("water_heater", (_rx(r"\b(water heater|hot water|no hot water|heater)\b"),), 90,
                            ("water heater", "hot water", "heater")),
            ServiceTypeRule("toilet_repair", (_rx(r"\b(toilet|running|flush|tank|bowl)\b"),), 80,
                            ("toilet", "flush", "tank", "bowl")),
            ServiceTypeRule("faucet_repair", (_rx(r"\b(faucet|tap|drip|dripping|leak|handle)\b"),), 75,
                            ("faucet", "tap", "drip", "leak")),
            ServiceTypeRule("pipe_repair", (_rx(r"\b(pipe|pipes|piping|burst|broken pipe|leak)\b"),), 85,
                            ("pipe", "piping", "burst", "leak")),
            ServiceTypeRule("gas_line", (_rx(r"\b(gas line|gas leak|smell gas|gas odor|propane)\b"),), 90,
                            ("gas", "propane")),
            ServiceTypeRule("sewer_line", (_rx(r"\b(sewer|sewage|septic|main line)\b"),), 85,
                            ("sewer", "sewage", "septic")),
        ),
        urgency_rules=(
            UrgencyRule("flooding", _rx(r"\b(flood|flooding|flooded|water everywhere|basement flood)\b"), "critical", "flooding"),
            UrgencyRule("gas leak", _rx(r"\b(gas leak|smell gas|gas odor|propane leak)\b"), "critical", "gas_leak"),
            UrgencyRule("no water", _rx(r"\b(no water|water shut off|no pressure|main line)\b"), "high", "no_water"),
            UrgencyRule("burst pipe", _rx(r"\b(burst pipe|pipe burst|broken pipe|pipe leak)\b"), "high", "burst_pipe"),
            UrgencyRule("backup", _rx(r"\b(sewer backup|drain backup|toilet backup|overflow|overflowing)\b"), "high", "backup"),
            UrgencyRule("emergency", _rx(r"\b(emergency|urgent|asap|help|crisis)\b"), "high", "general"),
        ),
        time_rules=(
            TimeRule("asap", _rx(r"\b(asap|as soon as possible|right away|immediately|urgent|emergency)\b")),
            TimeRule("specific", _rx(r"\b(today|tomorrow|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b")),
            TimeRule("range", _rx(r"\b(\d{1,2}(?::\d{2})?\s*(?:am|pm)?)\s*(?:to|-|until|and)\s*(\d{1,2}(?::\d{2})?\s*(?:am|pm)?)(?=\W|$)")),
            TimeRule("flexible", _rx(r"\b(anytime|any time|flexible|whenever)\b")),
        ),
        day_of_week_pattern=_rx(r"(monday|tuesday|wednesday|thursday|friday|saturday|sunday)"),
        clock_time_pattern=_rx(r"\b(\d{1,2}:\d{2}\s*(?:am|pm)?|\d{1,2}\s*(?:am|pm))\b"),
        problem_keywords=(
            "broken", "not working", "stopped", "failed", "blocked", "clogged",
            "leaking", "dripping", "running", "overflowing", "backing up",
            "no water", "low pressure", "slow drain", "noise", "smell",
        ),
        symptom_patterns=(
            re.compile(r"water\s+(?:is\s+)?(?:coming\s+)?(?:out\s+of|from|everywhere)"),
            re.compile(r"(?:can't|cannot)\s+(?:flush|turn\s+on|get\s+water)"),
            re.compile(r"(?:no|low)\s+(?:water\s+)?pressure"),
            re.compile(r"(?:slow|backed\s+up)\s+drain"),
            re.compile(r"(?:strange|weird|loud)\s+(?:noise|sound)"),
            re.compile(r"(?:bad|foul|sewer)\s+smell"),
        ),
        sentiment_lexicon=(
            ("frustrated", ("frustrated", "annoyed", "fed up", "ridiculous", "unacceptable")),
            ("urgent", ("urgent", "emergency", "asap", "immediate", "crisis", "desperate")),
            ("negative", ("terrible", "awful", "bad", "worst", "horrible", "hate")),
            ("positive", ("thank", "appreciate", "great", "excellent", "good", "pleased")),
        ),
        sentiment_scores=(
            ("positive", 0.8), ("neutral", 0.0), ("negative", -0.5),
            ("urgent", -0.3), ("frustrated", -0.8),
        ),
        formal_indicators=("dear", "sincerely", "respectfully", "please", "would you", "could you"),
        brief_reply_pattern=_rx(r"^(yes|no|ok|okay|thanks?|help|sure|k)$"),
        business_keywords=("company", "business", "office", "store", "restaurant", "shop"),
        property_manager_keywords=("property manager", "landlord", "tenant", "rental", "property management"),
        emergency_contact_keywords=("emergency contact", "on behalf of", "calling for", "representing"),
        follow_up_keywords=(
            "follow up", "followup", "update", "status", "still waiting",
            "any update", "what about", "regarding", "about my", "my issue",
            "previously", "earlier", "before", "last time",
        ),
        job_reference_patterns=(
            _rx(r"\bjob\s*#?\s*(\d+[\w-]*)"),
            _rx(r"\breference\s*#\s*(\w+)"),
            _rx(r"\bticket\s*#?\s*(\d+[\w-]*)"),
        ),
        quote_reference_patterns=(
            _rx(r"\bquote\s*#?\s*(\d+[\w-]*)"),
            _rx(r"\bestimate\s*#?\s*(\d+[\w-]*)"),
            _rx(r"\bproposal\s*#?\s*(\d+[\w-]*)"),
        ),
        quality_problem_keywords=("broken", "not working", "need", "help", "issue", "problem"),
        incomplete_patterns=(
            re.compile(r"\.\.\.$"),
            _rx(r"^(um|uh|well)\s"),
            _rx(r"\b(and|but|so)\s*$"),
        ),
        garbled_run_pattern=_rx(r"[aeiou]{3,}|[bcdfghjklmnpqrstvwxyz]{4,}"),
    )


def default_classifier_rules() -> ClassifierRules:
    return ClassifierRules(
        keyword_table=(
            # Critical
            ("gas leak", KeywordRule("critical", "gas_leak", 10)),
            ("smell gas", KeywordRule("critical", "gas_leak", 10)),
            ("flooding", KeywordRule("critical", "major_flood", 9)),
            ("water everywhere", KeywordRule("critical", "major_flood", 9)),
            ("burst main", KeywordRule("critical", "burst_main_line", 9)),
            ("sewage backup", KeywordRule("critical", "sewage_backup", 8)),
            # High
            ("no water", KeywordRule("high", "no_water_service", 7)),
            ("burst pipe", KeywordRule("high", "burst_main_line", 7)),
            ("frozen pipes", KeywordRule("high", "frozen_pipes", 6)),
            ("water heater leak", KeywordRule("high", "water_heater_emergency", 6)),
            # Medium
            ("toilet overflow", KeywordRule("medium", "general_emergency", 4)),
            ("drain backup", KeywordRule("medium", "general_emergency", 4)),
            # Context indicators
            ("emergency", KeywordRule("high", "general_emergency", 5)),
            ("urgent", KeywordRule("medium", "general_emergency", 3)),
            ("help asap", KeywordRule("high", "general_emergency", 5)),
        ),
        urgency_phrases=(
            "right now", "immediately", "can't wait", "dangerous", "safety issue",
            "health hazard", "getting worse", "spreading", "all over",
        ),
        emotional_phrases=("panicking", "scared", "worried", "desperate", "frantic", "stressed"),
        quantity_phrases=("everywhere", "lots of", "tons of", "gallons", "flooding", "soaked"),
        priority_high_phrases=(
            "asap", "today", "right away", "immediately", "cannot wait",
            "broken", "not working", "stopped working",
        ),
    )


@lru_cache()
def load_rules() -> RuleSet:
    """Build the process-wide rule set once."""
    return RuleSet(
        extraction=default_extraction_rules(),
        classifier=default_classifier_rules(),
    )


def severity_rank(severity: str) -> int:
    """Position in SEVERITY_ORDER; unknown tiers rank lowest."""
    try:
        return SEVERITY_ORDER.index(severity)
    except ValueError:
        return 0


def max_severity(severities) -> str:
    """Highest tier among severities, 'low' when empty."""
    best = "low"
    for severity in severities:
        if severity_rank(severity) > severity_rank(best):
            best = severity
    return best

"""
Emergency Classifier
Version: 1.0

Fan-in of four independent analyses combined into one verdict:
keyword table, context analyzers, customer emergency history and semantic
phrase families.

Never raises from classify(): any internal failure yields the safety
fallback, which over-escalates rather than under-escalates.

DEPENDS ON: rules.py, context_analyzers.py, metrics.py
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from services.context_analyzers import (
    AnalyzerKind,
    ContextAnalysis,
    DEFAULT_ANALYZERS,
    EmergencyContext,
    as_naive_utc,
    run_context_analysis,
)
from services.metrics import CLASSIFICATIONS_TOTAL
from services.rules import ClassifierRules, max_severity

logger = logging.getLogger(__name__)

# (customer_id, since) -> timestamps of that customer's past emergencies
HistoryProvider = Callable[[UUID, datetime], Awaitable[List[datetime]]]
AuditSink = Callable[[EmergencyContext, "EmergencyClassification", int], Awaitable[None]]

HISTORY_LIMIT = 10


@dataclass
class KeywordAnalysis:
    is_emergency: bool
    severity: str
    emergency_type: Optional[str]
    matched_keywords: List[str]
    total_weight: int
    confidence: float


@dataclass
class HistoricalAnalysis:
    has_patterns: bool
    confidence: float
    insights: List[str] = field(default_factory=list)


@dataclass
class SemanticAnalysis:
    score: float
    indicators: List[str]
    confidence: float


@dataclass
class EmergencyClassification:
    is_emergency: bool
    severity: str
    urgency_score: float
    emergency_type: str
    key_indicators: List[str]
    estimated_response_time: int
    suggested_actions: List[str]
    escalation_required: bool
    reasoning: str
    confidence: float
    context_factors: List[str] = field(default_factory=list)
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EmergencyClassifier:
    """
    Severity/urgency verdict for one message.

    Usage:
        classifier = EmergencyClassifier(load_rules().classifier, history_provider=store.emergency_history)
        verdict = await classifier.classify(EmergencyContext(message_text="gas leak!"))
    """

    def __init__(
        self,
        rules: ClassifierRules,
        history_provider: Optional[HistoryProvider] = None,
        audit_sink: Optional[AuditSink] = None,
        analyzers: Tuple[AnalyzerKind, ...] = DEFAULT_ANALYZERS
    ):
        self.rules = rules
        self.history_provider = history_provider
        self.audit_sink = audit_sink
        self.analyzers = analyzers

    async def classify(self, context: EmergencyContext) -> EmergencyClassification:
        started = time.perf_counter()

        try:
            keyword = self.analyze_keywords(context.message_text)
            contextual = run_context_analysis(context, self.analyzers)
            historical = await self.analyze_history(context)
            semantic = self.analyze_semantics(context.message_text)
            result = self._combine(context, keyword, contextual, historical, semantic)
        except Exception as e:
            logger.error(f"🚨 Classification failed, using safety fallback: {e}")
            result = self.fallback()

        processing_ms = int((time.perf_counter() - started) * 1000)
        CLASSIFICATIONS_TOTAL.labels(
            severity=result.severity,
            fallback=str(result.is_fallback).lower(),
        ).inc()

        if result.is_emergency:
            logger.info(
                f"Emergency detected: severity={result.severity} "
                f"score={result.urgency_score} type={result.emergency_type}"
            )

        await self._audit(context, result, processing_ms)
        return result

    # ─────────────────────────────────────────────
    # ANALYSES
    # ─────────────────────────────────────────────

    def analyze_keywords(self, text: str) -> KeywordAnalysis:
        lower = (text or "").lower()
        matched: List[str] = []
        severities: List[str] = []
        emergency_type = None
        total_weight = 0

        for phrase, rule in self.rules.keyword_table:
            if phrase not in lower:
                continue
            matched.append(phrase)
            severities.append(rule.severity)
            total_weight += rule.weight
            if emergency_type is None:
                emergency_type = rule.emergency_type

        return KeywordAnalysis(
            is_emergency=bool(matched),
            severity=max_severity(severities),
            emergency_type=emergency_type,
            matched_keywords=matched,
            total_weight=total_weight,
            confidence=min(0.9, total_weight / 10),
        )

    async def analyze_history(self, context: EmergencyContext) -> HistoricalAnalysis:
        if context.customer_id is None or self.history_provider is None:
            return HistoricalAnalysis(has_patterns=False, confidence=0.0)

        try:
            return await self._history_patterns(context)
        except Exception as e:
            # History is an enrichment; losing it must not lose the verdict
            logger.warning(f"Emergency history analysis failed for {context.customer_id}: {e}")
            return HistoricalAnalysis(has_patterns=False, confidence=0.0)

    async def _history_patterns(self, context: EmergencyContext) -> HistoricalAnalysis:
        now = as_naive_utc(context.timestamp)
        since = now - timedelta(days=self.rules.history_window_days)

        history = await self.history_provider(context.customer_id, since)
        history = sorted((as_naive_utc(ts) for ts in history), reverse=True)[:HISTORY_LIMIT]
        confidence = 0.3
        insights: List[str] = []

        if history:
            insights.append(f"{len(history)} prior emergencies in the last year")

        recent_cutoff = now - timedelta(days=self.rules.recent_window_days)
        recent = [ts for ts in history if ts >= recent_cutoff]
        if len(recent) >= 2:
            confidence += 0.2
            insights.append("multiple_recent_emergencies")

        if any(ts.month == now.month for ts in history):
            confidence += 0.1
            insights.append("seasonal_pattern")

        return HistoricalAnalysis(
            has_patterns=bool(insights),
            confidence=confidence,
            insights=insights,
        )

    def analyze_semantics(self, text: str) -> SemanticAnalysis:
        lower = (text or "").lower()
        families = (
            ("urgency", self.rules.urgency_phrases, self.rules.urgency_phrase_score),
            ("emotional", self.rules.emotional_phrases, self.rules.emotional_phrase_score),
            ("quantity", self.rules.quantity_phrases, self.rules.quantity_phrase_score),
        )

        score = 0.0
        indicators: List[str] = []
        for family, phrases, phrase_score in families:
            for phrase in phrases:
                if phrase in lower:
                    score += phrase_score
                    indicators.append(f"{family}: {phrase}")

        return SemanticAnalysis(
            score=min(1.0, score),
            indicators=indicators,
            confidence=0.7 if indicators else 0.3,
        )

    # ─────────────────────────────────────────────
    # COMBINATION
    # ─────────────────────────────────────────────

    def _combine(
        self,
        context: EmergencyContext,
        keyword: KeywordAnalysis,
        contextual: ContextAnalysis,
        historical: HistoricalAnalysis,
        semantic: SemanticAnalysis
    ) -> EmergencyClassification:
        rules = self.rules

        raw_score = (
            keyword.total_weight * rules.keyword_multiplier
            + semantic.score * rules.semantic_multiplier
            + contextual.urgency_modifier * rules.context_multiplier
            + (rules.history_bonus if historical.has_patterns else 0.0)
        )
        urgency_score = round(min(100.0, max(0.0, raw_score)), 2)
        severity = self.severity_for_score(urgency_score)

        is_emergency = urgency_score >= rules.emergency_threshold
        if rules.keyword_match_forces_emergency and keyword.is_emergency:
            is_emergency = True

        escalation_required = severity == "critical" or urgency_score >= rules.escalation_threshold
        emergency_type = keyword.emergency_type or "general_emergency"

        confidence = (
            keyword.confidence * 0.4
            + contextual.confidence * 0.3
            + historical.confidence * 0.2
            + semantic.confidence * 0.1
        )

        return EmergencyClassification(
            is_emergency=is_emergency,
            severity=severity,
            urgency_score=urgency_score,
            emergency_type=emergency_type,
            key_indicators=keyword.matched_keywords + semantic.indicators,
            estimated_response_time=self.estimate_response_time(severity, context.timestamp),
            suggested_actions=self.suggest_actions(severity, emergency_type),
            escalation_required=escalation_required,
            reasoning=self._reasoning(keyword, contextual, historical, semantic, urgency_score),
            confidence=round(min(1.0, confidence), 3),
            context_factors=contextual.factors,
        )

    def severity_for_score(self, score: float) -> str:
        if score >= self.rules.critical_threshold:
            return "critical"
        if score >= self.rules.high_threshold:
            return "high"
        if score >= self.rules.medium_threshold:
            return "medium"
        return "low"

    def estimate_response_time(self, severity: str, at: datetime) -> int:
        minutes = dict(self.rules.base_response_minutes).get(severity, 180)
        if at.hour < 7 or at.hour > 19:
            minutes *= self.rules.after_hours_response_factor
        return round(minutes)

    @staticmethod
    def suggest_actions(severity: str, emergency_type: str) -> List[str]:
        actions = ["DISPATCH_TECHNICIAN", "SEND_CUSTOMER_NOTIFICATION"]

        if severity == "critical":
            actions += ["NOTIFY_MANAGEMENT", "PREPARE_BACKUP_TECHNICIAN"]

        if emergency_type == "gas_leak":
            actions += ["CONTACT_GAS_COMPANY", "ADVISE_EVACUATION"]
        elif emergency_type == "major_flood":
            actions += ["DISPATCH_WATER_EXTRACTION_EQUIPMENT", "CONTACT_INSURANCE_NOTIFICATION_SERVICE"]

        return actions

    @staticmethod
    def _reasoning(
        keyword: KeywordAnalysis,
        contextual: ContextAnalysis,
        historical: HistoricalAnalysis,
        semantic: SemanticAnalysis,
        urgency_score: float
    ) -> str:
        parts = []
        if keyword.matched_keywords:
            parts.append(f"Emergency keywords detected: {', '.join(keyword.matched_keywords)}")
        if semantic.indicators:
            parts.append(f"Semantic indicators: {', '.join(semantic.indicators)}")
        if contextual.factors:
            parts.append(f"Context factors: {', '.join(contextual.factors)}")
        if historical.insights:
            parts.append(f"Customer history: {', '.join(historical.insights)}")
        parts.append(f"Urgency score: {urgency_score}/100")
        return ". ".join(parts)

    @staticmethod
    def fallback() -> EmergencyClassification:
        """Over-escalating verdict used when classification fails."""
        return EmergencyClassification(
            is_emergency=True,
            severity="high",
            urgency_score=70.0,
            emergency_type="general_emergency",
            key_indicators=["safety_fallback_triggered"],
            estimated_response_time=45,
            suggested_actions=["DISPATCH_TECHNICIAN", "MANUAL_REVIEW_REQUIRED"],
            escalation_required=True,
            reasoning="Emergency classification failed - using safety fallback protocol",
            confidence=0.5,
            is_fallback=True,
        )

    async def _audit(
        self,
        context: EmergencyContext,
        result: EmergencyClassification,
        processing_ms: int
    ) -> None:
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink(context, result, processing_ms)
        except Exception as e:
            logger.warning(f"Classification audit write failed: {e}")


def message_priority(rules: ClassifierRules, text: str) -> str:
    """
    Initial conversation priority from raw text.

    Uses the classifier keyword table so un-parsed messages still get a
    sensible priority: critical phrase -> emergency, high phrase or a
    time-pressure phrase -> high, otherwise medium.
    """
    lower = (text or "").lower()
    severities = [rule.severity for phrase, rule in rules.keyword_table if phrase in lower]
    severity = max_severity(severities)

    if severity == "critical":
        return "emergency"
    if severity == "high" or any(p in lower for p in rules.priority_high_phrases):
        return "high"
    return "medium"


def contains_emergency_keywords(rules: ClassifierRules, text: str) -> bool:
    lower = (text or "").lower()
    return any(phrase in lower for phrase, _ in rules.keyword_table)

"""
Composite Index Scoring

Turns one day of raw metric facts into a single score on a 0-100 scale:

    s_i = 100 * log1p(max(v_i, 0)) / log1p(ceiling_i), clipped to [0, 100]
    index = sum(w_i * s_i) / sum(w_i)

The sums run over every active metric; metrics without a fact score 0. The
denominator therefore depends only on the metric catalog, which keeps scores
comparable across games with different metric mixes. Raising one value never
lowers the index.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

import numpy as np
import structlog

from popularity_engine.config import PopularitySettings
from popularity_engine.schemas import GameMetricDaily, Metric

logger = structlog.get_logger(__name__)

INDEX_QUANTUM = Decimal("0.0001")
MAX_SCORE = 100.0


def quantize(value: float) -> Decimal:
    """Round to the 4 decimal places stored in index columns"""
    return Decimal(repr(float(value))).quantize(INDEX_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class MetricContribution:
    """Per-metric breakdown of a composite score"""
    metric_id: int
    code: str
    weight: float
    raw_value: Optional[float]
    score: float


@dataclass(frozen=True)
class CompositeScore:
    """Composite index with its breakdown"""
    index_value: Decimal
    total_weight: float
    facts_used: int
    contributions: List[MetricContribution] = field(default_factory=list)


class ScoringPolicy:
    """
    Weighting and normalization policy.
    
    Example:
        policy = ScoringPolicy(PopularitySettings())
        score = policy.composite(active_metrics, facts)
        score.index_value  # Decimal('31.2745')
    """
    
    def __init__(self, settings: Optional[PopularitySettings] = None):
        self.settings = settings or PopularitySettings()
        self._accepted = {q.lower() for q in self.settings.accepted_qualities}
    
    def weight_for(self, metric: Metric) -> float:
        """Weight by code, then by category, then the default"""
        weights = self.settings.metric_weights
        if metric.code in weights:
            return weights[metric.code]
        if metric.category and metric.category in self.settings.category_weights:
            return self.settings.category_weights[metric.category]
        return self.settings.default_weight
    
    def ceiling_for(self, metric: Metric) -> float:
        return self.settings.reference_ceilings.get(metric.code, self.settings.default_ceiling)
    
    def accepts(self, fact: GameMetricDaily) -> bool:
        return (fact.quality or "").lower() in self._accepted
    
    @staticmethod
    def normalize(values: np.ndarray, ceilings: np.ndarray) -> np.ndarray:
        """Log-scale raw values against their ceilings onto [0, 100]"""
        values = np.clip(np.asarray(values, dtype=float), 0.0, None)
        scores = MAX_SCORE * np.log1p(values) / np.log1p(np.asarray(ceilings, dtype=float))
        return np.clip(scores, 0.0, MAX_SCORE)
    
    def composite(
        self,
        metrics: Sequence[Metric],
        facts: Sequence[GameMetricDaily],
    ) -> CompositeScore:
        """
        Score one (game, date).
        
        Args:
            metrics: Active metric definitions
            facts: The game's facts for the date
        
        Returns:
            CompositeScore, zero when there are no usable facts
        """
        ordered = sorted((m for m in metrics if m.is_active), key=lambda m: m.metric_id)
        if not ordered:
            return CompositeScore(index_value=quantize(0.0), total_weight=0.0, facts_used=0)
        
        values: Dict[int, float] = {
            f.metric_id: float(f.value) for f in facts if self.accepts(f)
        }
        
        weights = np.array([self.weight_for(m) for m in ordered], dtype=float)
        ceilings = np.array([self.ceiling_for(m) for m in ordered], dtype=float)
        raw = np.array([values.get(m.metric_id, 0.0) for m in ordered], dtype=float)
        present = np.array([m.metric_id in values for m in ordered], dtype=bool)
        
        scores = np.where(present, self.normalize(raw, ceilings), 0.0)
        total_weight = float(weights.sum())
        composite = float(np.dot(weights, scores) / total_weight) if total_weight > 0 else 0.0
        
        contributions = [
            MetricContribution(
                metric_id=m.metric_id,
                code=m.code,
                weight=float(w),
                raw_value=values.get(m.metric_id),
                score=float(s),
            )
            for m, w, s in zip(ordered, weights, scores)
        ]
        
        result = CompositeScore(
            index_value=quantize(min(max(composite, 0.0), MAX_SCORE)),
            total_weight=total_weight,
            facts_used=int(present.sum()),
            contributions=contributions,
        )
        logger.debug(
            "Composite computed",
            metrics=len(ordered),
            facts_used=result.facts_used,
            total_weight=total_weight,
            index_value=str(result.index_value),
        )
        return result

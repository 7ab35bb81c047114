"""
Candidate scoring and ranking.

Three weighted signals on a 100-point base (proximity, quality, experience)
plus a flat priority bonus. Ranking is fully deterministic: score desc, then
distance asc, then driver id.
"""
from dataclasses import dataclass, field, replace

from dispatch_engine.config import Settings
from dispatch_engine.schemas.schemas import PriorityEnum, VehicleClassEnum


@dataclass(frozen=True)
class Candidate:
    driver_id: str
    distance_km: float
    rating: float
    completed_trips: int
    vehicle_class: VehicleClassEnum | None = None
    score: float = 0.0


@dataclass(frozen=True)
class ScoringWeights:
    proximity: float = 50.0
    quality: float = 30.0
    experience: float = 20.0
    max_rating: float = 5.0
    experience_cap: int = 100
    priority_bonus: dict[str, float] = field(
        default_factory=lambda: {"normal": 0.0, "high": 10.0, "urgent": 20.0}
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringWeights":
        return cls(
            proximity=settings.weight_proximity,
            quality=settings.weight_quality,
            experience=settings.weight_experience,
            max_rating=settings.max_rating,
            experience_cap=settings.experience_cap_trips,
            priority_bonus=dict(settings.priority_bonus),
        )


def score_candidate(
    candidate: Candidate,
    priority: PriorityEnum,
    max_radius_km: float,
    weights: ScoringWeights,
) -> float:
    proximity = max(0.0, (max_radius_km - candidate.distance_km) / max_radius_km) * weights.proximity
    rating = min(max(candidate.rating, 0.0), weights.max_rating)
    quality = (rating / weights.max_rating) * weights.quality
    experience = min(candidate.completed_trips / weights.experience_cap, 1.0) * weights.experience
    bonus = weights.priority_bonus.get(PriorityEnum(priority).value, 0.0)
    return proximity + quality + experience + bonus


def rank_candidates(
    candidates: list[Candidate],
    priority: PriorityEnum,
    max_radius_km: float,
    weights: ScoringWeights | None = None,
) -> list[Candidate]:
    weights = weights or ScoringWeights()
    scored = [
        replace(c, score=score_candidate(c, priority, max_radius_km, weights))
        for c in candidates
    ]
    return sorted(scored, key=lambda c: (-c.score, c.distance_km, c.driver_id))

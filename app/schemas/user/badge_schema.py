from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class BadgeRead(BaseModel):
    id: str
    name: str
    emoji: Optional[str] = None
    description: str = ""
    question: str = ""
    theme: str = "Autres"
    low_skill: bool = False
    is_ghost: bool = False

    class Config:
        from_attributes = True


class BadgeWithStatus(BaseModel):
    badge: BadgeRead
    is_unlocked: bool
    level: Optional[str] = None
    level_tag: str
    display_answer: Optional[str] = None
    skill_points: int = 0
    was_ever_unlocked: bool = False
    blocked_by_suspicion: bool = False


class AggregateRead(BaseModel):
    unlocked_badge_ids: List[str]
    levels: Dict[str, Optional[str]]
    skill_total: int
    rank: str
    unlocked_count: int
    total_badge_count: int
    low_skill_unlocked_count: int


class AnswerSubmit(BaseModel):
    answer: Optional[str] = None
    options: List[str] = Field(default_factory=list)


class AnswerResult(BaseModel):
    status: str
    ok: bool
    level: Optional[str] = None
    message: str
    aggregate: AggregateRead


class SuspicionResult(BaseModel):
    blocked: bool
    suspicion_count: int


class CatalogTotals(BaseModel):
    badge_count: int
    total_skills: int
    total_low_skills: int
    max_points: Dict[str, int]

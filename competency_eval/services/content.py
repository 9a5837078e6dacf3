"""Loaders for externally authored content.

Tier requirements and the placement question pool are configuration, not
code: they live in YAML files (see competency_eval/data) and are validated
here once at load time.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

import yaml
from pydantic import ValidationError

from competency_eval.config import settings
from competency_eval.errors import ContentError
from competency_eval.models.level import TierRequirements
from competency_eval.models.placement import PlacementQuestion
from competency_eval.services.tiers import TIERS, is_valid_tier

logger = logging.getLogger(__name__)

OPTIONS_PER_QUESTION = 4


def _load_yaml(path) -> dict:
    """Load a YAML content file."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ContentError(f"{path}: expected a mapping at the top level")
    return data


def parse_tier_requirements(raw: dict) -> Dict[str, TierRequirements]:
    tiers = raw.get("tiers", raw)
    table = {}
    for tier, body in tiers.items():
        if not is_valid_tier(tier):
            raise ContentError(f"Unknown tier in requirements: {tier!r}")
        try:
            table[tier] = TierRequirements(tier=tier, **(body or {}))
        except ValidationError as exc:
            raise ContentError(f"Invalid requirements for {tier}: {exc}") from exc

    missing = [t for t in TIERS if t not in table]
    if missing:
        raise ContentError(f"Requirements missing for tiers: {', '.join(missing)}")
    return table


def validate_question(question: PlacementQuestion) -> None:
    """Check the authoring invariants: 4 distinct options, one of them correct."""
    if len(question.options) != OPTIONS_PER_QUESTION:
        raise ContentError(f"Question {question.id} must have exactly {OPTIONS_PER_QUESTION} options")
    if len(set(question.options)) != len(question.options):
        raise ContentError(f"Question {question.id} has duplicate options")
    if question.correct not in question.options:
        raise ContentError(f"Question {question.id}: correct answer is not among the options")


def parse_question_bank(raw: dict) -> Dict[str, List[PlacementQuestion]]:
    bank: Dict[str, List[PlacementQuestion]] = {}
    seen_ids = set()
    for tier, items in raw.items():
        if not is_valid_tier(tier):
            raise ContentError(f"Unknown tier in question pool: {tier!r}")
        questions = []
        for item in items or []:
            competency = item.get("competency") or {}
            try:
                question = PlacementQuestion(
                    id=str(item["id"]),
                    tier=tier,
                    prompt=item["prompt"],
                    options=[str(o) for o in item["options"]],
                    correct=str(item["correct"]),
                    explanation=item.get("explanation", ""),
                    mood=competency["mood"],
                    tense=competency["tense"],
                    rule=competency.get("rule"),
                )
            except (KeyError, TypeError, ValidationError) as exc:
                raise ContentError(f"Malformed question in {tier}: {item!r}") from exc
            validate_question(question)
            if question.id in seen_ids:
                raise ContentError(f"Duplicate question id: {question.id}")
            seen_ids.add(question.id)
            questions.append(question)
        bank[tier] = questions
    return bank


@lru_cache(maxsize=None)
def load_tier_requirements(path: str = None) -> Dict[str, TierRequirements]:
    path = path or settings.requirements_path
    table = parse_tier_requirements(_load_yaml(path))
    logger.debug("Loaded tier requirements for %d tiers from %s", len(table), Path(path).name)
    return table


@lru_cache(maxsize=None)
def load_question_bank(path: str = None) -> Dict[str, List[PlacementQuestion]]:
    path = path or settings.questions_path
    bank = parse_question_bank(_load_yaml(path))
    logger.debug(
        "Loaded %d placement questions from %s",
        sum(len(q) for q in bank.values()), Path(path).name,
    )
    return bank

"""Shared pytest fixtures for workout AI tests."""

from __future__ import annotations

import copy
import json
from typing import Any

import pytest

_EXERCISE = {
    "name": "Goblet Squat",
    "category": "strength",
    "sets": 3,
    "reps": 12,
    "restSeconds": 60,
    "equipment": ["dumbbell"],
    "muscleGroups": ["quads", "glutes"],
    "difficulty": "beginner",
}

_PLAN = {
    "name": "Beginner Plan",
    "description": "Three full-body sessions a week to build a base.",
    "goal": "general fitness",
    "durationWeeks": 4,
    "sessionsPerWeek": 3,
    "sessions": [
        {
            "dayOfWeek": 1,
            "sessionType": "strength",
            "duration": 45,
            "warmup": [{"name": "Jumping Jacks", "category": "cardio", "duration": "2 minutes"}],
            "mainWorkout": [
                _EXERCISE,
                {"name": "Push-up", "category": "strength", "sets": 3, "reps": "8-10", "restSeconds": 60},
            ],
            "cooldown": [{"name": "Hamstring Stretch", "category": "flexibility", "duration": "30 seconds"}],
            "calorieEstimate": 250,
        },
        {
            "dayOfWeek": 3,
            "sessionType": "cardio",
            "duration": 30,
            "mainWorkout": [{"name": "Brisk Walk", "category": "cardio", "duration": "30 minutes"}],
        },
    ],
    "progressionNotes": "Add one rep per set each week.",
    "adaptations": {"knee pain": "Swap squats for glute bridges"},
}


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def sample_exercise() -> dict[str, Any]:
    return copy.deepcopy(_EXERCISE)


@pytest.fixture
def sample_plan() -> dict[str, Any]:
    """A valid workout plan in the camelCase JSON shape models are prompted for."""
    return copy.deepcopy(_PLAN)


@pytest.fixture
def sample_plan_json(sample_plan: dict[str, Any]) -> str:
    return json.dumps(sample_plan)


@pytest.fixture
def no_sleep():
    """Stand-in for asyncio.sleep so backoff does not wait."""
    return _no_sleep

"""Leveling engine — pure business logic.

Turns completed work into experience, derives the level from lifetime
experience, and works out which rewards a level-up unlocks.

No I/O: this module only transforms data. The coordinator persists the
resulting profile and announces level-ups.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable

from forgeflow.core.session_timer import total_elapsed
from forgeflow.data.models import PlayerProfile, Quest, SubQuest, TodoItem

logger = logging.getLogger(__name__)

XP_PER_MINUTE = 2
BOSS_MULTIPLIER = 2
LEVEL_UP_NANOBYTES = 100
MAX_LEVEL = 50

# Paid once when the last open sub-quest of a quest is ticked off
SUBQUEST_CLEAR_BONUS = 50


@dataclass(frozen=True)
class RewardUnlock:
    key: str
    name: str
    level: int


REWARD_CATALOGUE: tuple[RewardUnlock, ...] = (
    RewardUnlock("theme_terminal", "Terminal Green theme", 2),
    RewardUnlock("title_junior_dev", "Junior Dev title", 3),
    RewardUnlock("theme_neon", "Neon Grid theme", 4),
    RewardUnlock("title_mid_level", "Mid-Level title", 5),
    RewardUnlock("theme_solarized", "Solarized theme", 7),
    RewardUnlock("title_senior_architect", "Senior Architect title", 10),
    RewardUnlock("theme_midnight", "Midnight Ops theme", 15),
    RewardUnlock("title_staff_engineer", "Staff Engineer title", 20),
    RewardUnlock("title_cto", "CTO title", 50),
)

_REWARD_NAMES = {r.key: r.name for r in REWARD_CATALOGUE}


@dataclass(frozen=True)
class Reward:
    """Outcome of one completion, computed against the profile before it."""

    xp_gained: int
    nanobytes_gained: int
    previous_level: int
    new_level: int
    new_experience: int
    leveled_up: bool
    unlocked_rewards: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Level curve
# ---------------------------------------------------------------------------


def xp_required_for_level_up(level: int) -> int:
    """XP needed to advance from ``level`` to ``level + 1``."""
    if level <= 1:
        return 100
    return 120 * level


def experience_for_level(level: int) -> int:
    """Lifetime experience at which ``level`` is reached."""
    level = max(1, min(level, MAX_LEVEL))
    return sum(xp_required_for_level_up(lvl) for lvl in range(1, level))


def level_for_experience(experience: int) -> int:
    """Step curve: the highest level whose threshold ``experience`` meets."""
    level = 1
    remaining = max(0, experience)
    while level < MAX_LEVEL:
        needed = xp_required_for_level_up(level)
        if remaining < needed:
            break
        remaining -= needed
        level += 1
    return level


def xp_to_next_level(experience: int) -> int:
    level = level_for_experience(experience)
    if level >= MAX_LEVEL:
        return 0
    return experience_for_level(level + 1) - max(0, experience)


def level_progress(experience: int) -> float:
    """Fraction (0.0-1.0) of the way through the current level."""
    level = level_for_experience(experience)
    if level >= MAX_LEVEL:
        return 1.0
    floor = experience_for_level(level)
    return (max(0, experience) - floor) / xp_required_for_level_up(level)


def rewards_for_level(level: int) -> list[str]:
    return [r.key for r in REWARD_CATALOGUE if r.level == level]


def reward_name(key: str) -> str:
    return _REWARD_NAMES.get(key, key)


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


def xp_for_duration(seconds: float, xp_per_minute: int = XP_PER_MINUTE) -> int:
    """Whole focused minutes times the per-minute rate; never negative."""
    minutes = int(max(0.0, seconds) // 60)
    return minutes * xp_per_minute


def _build_reward(xp_gained: int, profile: PlayerProfile) -> Reward:
    previous_level = level_for_experience(profile.experience)
    new_experience = profile.experience + xp_gained
    new_level = level_for_experience(new_experience)
    leveled_up = new_level > previous_level

    unlocked: tuple[str, ...] = ()
    if leveled_up:
        already = set(profile.unlocked_rewards)
        unlocked = tuple(k for k in rewards_for_level(new_level) if k not in already)

    levels_gained = new_level - previous_level
    return Reward(
        xp_gained=xp_gained,
        nanobytes_gained=xp_gained // 2 + LEVEL_UP_NANOBYTES * levels_gained,
        previous_level=previous_level,
        new_level=new_level,
        new_experience=new_experience,
        leveled_up=leveled_up,
        unlocked_rewards=unlocked,
    )


def compute_reward(
    quest: Quest,
    profile: PlayerProfile,
    now: datetime,
    *,
    subquests: Iterable[SubQuest] = (),
    xp_per_minute: int = XP_PER_MINUTE,
    boss_multiplier: int = BOSS_MULTIPLIER,
) -> Reward:
    """Reward for completing ``quest`` at ``now``.

    Time tracked on ``subquests`` counts toward the quest. Deterministic
    for the same inputs. A boss quest earns exactly ``boss_multiplier``
    times the base XP.
    """
    xp = xp_for_duration(total_elapsed(quest, subquests, now), xp_per_minute)
    if quest.is_boss_quest:
        xp *= boss_multiplier
    return _build_reward(xp, profile)


def compute_todo_reward(todo: TodoItem, profile: PlayerProfile) -> Reward:
    """Flat reward for ticking off a todo, scaled by its priority."""
    return _build_reward(todo.priority.xp_reward, profile)


def compute_subquest_reward(
    subquest: SubQuest,
    profile: PlayerProfile,
    *,
    first_completion: bool = True,
    clears_quest: bool = False,
) -> Reward:
    """Reward for ticking off ``subquest``.

    Difficulty XP is paid on the first completion only; the clear bonus
    is added when this tick leaves no open step on the quest.
    """
    xp = subquest.difficulty.xp_reward if first_completion else 0
    if clears_quest:
        xp += SUBQUEST_CLEAR_BONUS
    return _build_reward(xp, profile)


def quest_progress(quest: Quest, subquests: Iterable[SubQuest]) -> float:
    """Share of sub-quests done; without any, 1.0 only once completed."""
    subquests = list(subquests)
    if not subquests:
        return 1.0 if quest.is_completed else 0.0
    return sum(1 for s in subquests if s.is_completed) / len(subquests)


def apply_reward(profile: PlayerProfile, reward: Reward) -> PlayerProfile:
    """Return a copy of ``profile`` with ``reward`` folded in."""
    unlocked = list(profile.unlocked_rewards)
    unlocked.extend(k for k in reward.unlocked_rewards if k not in unlocked)
    return replace(
        profile,
        experience=reward.new_experience,
        level=reward.new_level,
        nanobytes=profile.nanobytes + reward.nanobytes_gained,
        unlocked_rewards=unlocked,
    )


def reconcile_level(profile: PlayerProfile) -> PlayerProfile:
    """Recompute level from experience; log and repair any drift."""
    expected = level_for_experience(profile.experience)
    if profile.level == expected:
        return profile
    logger.warning(
        "Profile %d level drift: stored %d, experience %d implies %d",
        profile.id, profile.level, profile.experience, expected,
    )
    return replace(profile, level=expected)

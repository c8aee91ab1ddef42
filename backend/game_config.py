"""
Game rules and tuning constants: modes, scoring, upgrades, boss battles,
tower climbs and power-ups. Everything here is pure so the same numbers
drive the solo and multiplayer handlers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ModeConfig:
    questions: int
    time_per_question: int
    lives: Optional[int] = None
    boss_hp: Optional[int] = None
    speed_bonus: bool = False


SOLO_MODES: dict[str, ModeConfig] = {
    'classic': ModeConfig(questions=10, time_per_question=30),
    'rush': ModeConfig(questions=20, time_per_question=15, speed_bonus=True),
    'survival': ModeConfig(questions=50, time_per_question=25, lives=3),
    'boss_battle': ModeConfig(questions=15, time_per_question=20, boss_hp=1000),
    'tower_climb': ModeConfig(questions=100, time_per_question=30, lives=3),
}

MULTIPLAYER_MODES: dict[str, ModeConfig] = {
    'classic': ModeConfig(questions=10, time_per_question=30),
    'rush': ModeConfig(questions=15, time_per_question=15, speed_bonus=True),
    'survival': ModeConfig(questions=20, time_per_question=25),
    'boss_battle': ModeConfig(questions=15, time_per_question=20, boss_hp=1000),
}

DEFAULT_MODE = 'classic'


def resolve_mode(mode: Optional[str], multiplayer: bool = False) -> tuple[str, ModeConfig]:
    """Return (mode, config), falling back to classic for unknown modes"""
    table = MULTIPLAYER_MODES if multiplayer else SOLO_MODES
    if mode in table:
        return mode, table[mode]
    return DEFAULT_MODE, table[DEFAULT_MODE]


# --- Scoring ---


def _floor(value: float) -> int:
    # Upgrade effects are decimal fractions; round away float noise (60 * 1.15) first
    return math.floor(round(value, 6))


BASE_POINTS = 100
BASE_COINS = 50
COINS_PER_STREAK = 10

# Checked top-down: first threshold reached wins
STREAK_MULTIPLIERS: list[tuple[int, int]] = [
    (7, 5),
    (5, 3),
    (3, 2),
]


def get_streak_multiplier(streak: int) -> int:
    for min_streak, multiplier in STREAK_MULTIPLIERS:
        if streak >= min_streak:
            return multiplier
    return 1


@dataclass(frozen=True)
class Reward:
    points: int
    coins: int
    speed_bonus: int = 0


def calculate_solo_reward(
    is_correct: bool,
    streak: int,
    mode: str,
    time_remaining: float,
    *,
    double_points: bool = False,
    streak_boost: float = 1.0,
    coin_boost: float = 1.0,
) -> Reward:
    """Points and coins for one solo answer.

    `streak` is the streak *before* this answer. `streak_boost` and
    `coin_boost` come from the streak_bonus / coin_multiplier upgrades.
    """
    if not is_correct:
        return Reward(points=0, coins=0)

    multiplier = get_streak_multiplier(streak)
    if multiplier > 1:
        points = _floor(BASE_POINTS * multiplier * streak_boost)
    else:
        points = BASE_POINTS
    coins = BASE_COINS + (streak + 1) * COINS_PER_STREAK

    speed_bonus = 0
    if SOLO_MODES.get(mode, SOLO_MODES[DEFAULT_MODE]).speed_bonus and time_remaining > 10:
        speed_bonus = math.floor((time_remaining - 10) * 20)
        points += speed_bonus
        coins += speed_bonus // 5

    if double_points:
        points *= 2

    return Reward(points=points, coins=_floor(coins * coin_boost), speed_bonus=speed_bonus)


def calculate_multiplayer_points(is_correct: bool, new_streak: int, mode: str, time_spent: float) -> int:
    """Points for one multiplayer answer; `new_streak` already includes it."""
    if not is_correct:
        return 0

    _, config = resolve_mode(mode, multiplayer=True)
    speed_bonus = 0
    if config.speed_bonus:
        time_remaining = config.time_per_question - time_spent
        if time_remaining > 5:
            speed_bonus = math.floor(time_remaining * 15)

    return BASE_POINTS * get_streak_multiplier(new_streak) + speed_bonus


# --- Upgrades (persistent, bought with account coins) ---

@dataclass(frozen=True)
class UpgradeConfig:
    name: str
    description: str
    base_cost: int
    cost_multiplier: float
    max_level: int
    effect: Callable[[int], float]


UPGRADES: dict[str, UpgradeConfig] = {
    'passive_income': UpgradeConfig(
        name='Money Tree',
        description='Earn coins passively between questions',
        base_cost=100, cost_multiplier=1.5, max_level=10,
        effect=lambda level: level * 5,  # coins per question
    ),
    'streak_bonus': UpgradeConfig(
        name='Streak Enhancer',
        description='Increased multiplier for streaks',
        base_cost=200, cost_multiplier=1.8, max_level=5,
        effect=lambda level: 1 + level * 0.1,
    ),
    'coin_multiplier': UpgradeConfig(
        name='Gold Mine',
        description='Earn more coins per correct answer',
        base_cost=150, cost_multiplier=1.6, max_level=8,
        effect=lambda level: 1 + level * 0.15,
    ),
    'time_bonus': UpgradeConfig(
        name='Time Bank',
        description='Extra seconds per question',
        base_cost=250, cost_multiplier=2.0, max_level=5,
        effect=lambda level: level * 2,  # extra seconds
    ),
    'boss_damage': UpgradeConfig(
        name='Power Strike',
        description='Deal more damage to bosses',
        base_cost=300, cost_multiplier=1.7, max_level=10,
        effect=lambda level: 1 + level * 0.2,
    ),
}


def get_upgrade_cost(upgrade_id: str, current_level: int) -> int:
    upgrade = UPGRADES[upgrade_id]
    return _floor(upgrade.base_cost * upgrade.cost_multiplier ** current_level)


def upgrade_effect(upgrade_id: str, level: int) -> float:
    return UPGRADES[upgrade_id].effect(level)


# --- Boss battles ---

SOLO_BOSS = {
    'correctAnswerDamage': 100,
    'incorrectAnswerDamage': 25,
    'streakDamageBonus': 10,
}

MULTIPLAYER_BOSS = {
    'baseDamage': 50,
    'streakDamageBonus': 10,
    'upgradeBonus': 5,             # per boss_damage upgrade level
    'healAmount': 20,              # HP healed on a wrong answer
    'enragedHealAmount': 50,       # HP healed when enraged
    'enrageTimeThresholdMs': 25000,
    'gemsPerQuestion': 5,          # per question reached, on victory
}


def calculate_solo_boss_damage(is_correct: bool, streak: int, boss_damage_level: int = 0) -> int:
    if is_correct:
        damage = SOLO_BOSS['correctAnswerDamage'] + max(streak, 0) * SOLO_BOSS['streakDamageBonus']
    else:
        damage = SOLO_BOSS['incorrectAnswerDamage']
    return _floor(damage * upgrade_effect('boss_damage', boss_damage_level))


def calculate_multiplayer_boss_damage(new_streak: int, boss_damage_level: int = 0) -> int:
    return (
        MULTIPLAYER_BOSS['baseDamage']
        + new_streak * MULTIPLAYER_BOSS['streakDamageBonus']
        + boss_damage_level * MULTIPLAYER_BOSS['upgradeBonus']
    )


def boss_heal_amount(enraged: bool) -> int:
    return MULTIPLAYER_BOSS['enragedHealAmount'] if enraged else MULTIPLAYER_BOSS['healAmount']


def is_boss_enraged(elapsed_seconds: float) -> bool:
    return elapsed_seconds * 1000 > MULTIPLAYER_BOSS['enrageTimeThresholdMs']


# --- Tower climb ---

TOWER = {
    'gemsPerFloor': 5,
    'bonusGemsAt': [5, 10, 15, 20, 25],  # milestone floors
    'milestoneBonus': 25,
}


def calculate_tower_gems(floor_reached: int) -> tuple[int, list[int]]:
    """Gems for reaching a floor, plus the milestones passed on the way"""
    milestones = [m for m in TOWER['bonusGemsAt'] if floor_reached >= m]
    gems = floor_reached * TOWER['gemsPerFloor'] + len(milestones) * TOWER['milestoneBonus']
    return gems, milestones


# --- Power-ups (single use, bought with the in-game wallet) ---

@dataclass(frozen=True)
class PowerUp:
    id: str
    name: str
    description: str
    cost: int


POWER_UPS: dict[str, PowerUp] = {
    'timeFreeze': PowerUp('timeFreeze', 'Time Freeze', 'Freeze the timer for this question', 150),
    'fiftyFifty': PowerUp('fiftyFifty', '50/50', 'Remove 2 wrong answers', 200),
    'doublePoints': PowerUp('doublePoints', 'Double Points', '2x points on next correct answer', 250),
    'skip': PowerUp('skip', 'Skip Question', 'Skip without penalty', 100),
}

INITIAL_COINS = 100


# --- Multiplayer / misc ---

MAX_PLAYERS_PER_GAME = 30
GAME_CODE_CHARS = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
GAME_CODE_LENGTH = 6
AUTO_ADVANCE_BUFFER_SECONDS = 3

"""Spinner: a decelerating highlight that walks the room and lands on one player."""

import asyncio
import logging
import math
import random
import time
from typing import Dict, List, Optional

import config
from errors import StateError

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def plan_final_step(player_count: int, rng=random) -> int:
    """Pick the step the spinner stops on: 3-5 full rotations plus an offset."""
    span = config.SPINNER_MAX_ROTATIONS - config.SPINNER_MIN_ROTATIONS
    rotations = config.SPINNER_MIN_ROTATIONS + rng.random() * span
    total_steps = math.floor(rotations * player_count)
    offset = rng.randrange(player_count)
    return total_steps + offset


def tick_delay_ms(step: int, final_step: int, min_delay_ms: int, max_delay_ms: int) -> int:
    """Quadratic ease-out: fast at the start, slowing towards final_step."""
    progress = step / final_step
    return math.floor(min_delay_ms + (max_delay_ms - min_delay_ms) * progress ** 2)


class SpinnerRun:
    def __init__(self, player_order: List[str], player_names: Dict[str, str],
                 final_step: int, winner_duration: float, started_by: str):
        self.player_order = player_order
        self.player_names = player_names  # snapshot, survives players leaving mid-run
        self.final_step = final_step
        self.winner_duration = winner_duration  # seconds
        self.started_by = started_by
        self.current_step = 0
        self.current_index = 0

    @property
    def finished(self) -> bool:
        return self.current_step >= self.final_step

    @property
    def current_player_id(self) -> str:
        return self.player_order[self.current_index]

    @property
    def winner_duration_ms(self) -> int:
        return int(self.winner_duration * 1000)

    def advance(self):
        self.current_step += 1
        self.current_index = (self.current_index + 1) % len(self.player_order)


class SpinnerEngine:
    """Runs at most one SpinnerRun per room as an asyncio task on the room.

    The dispatcher provides ``broadcast_to_room``, ``send_to_client`` and
    ``room_exists``. Callers hold ``room.lock`` when calling ``start``; every
    tick takes the lock itself.
    """

    def __init__(self, dispatcher, min_delay_ms: int = config.SPINNER_MIN_DELAY_MS,
                 max_delay_ms: int = config.SPINNER_MAX_DELAY_MS, rng=None):
        self.dispatcher = dispatcher
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.rng = rng or random.Random()

    async def start(self, room, started_by: str,
                    winner_duration: Optional[float] = None) -> SpinnerRun:
        if room.spinner is not None:
            raise StateError("Spinner is already running")
        if len(room.players) < config.MIN_SPINNER_PLAYERS:
            raise StateError(f"Need at least {config.MIN_SPINNER_PLAYERS} players to spin")

        # Stable join order unless the room has an explicit override
        order = list(room.player_order) if room.player_order else list(room.players)
        names = {pid: room.players[pid]["name"] for pid in order}
        final_step = plan_final_step(len(order), self.rng)
        duration = (winner_duration or room.default_winner_duration
                    or config.DEFAULT_WINNER_DURATION)

        run = SpinnerRun(order, names, final_step, duration, started_by)
        room.spinner = run

        await self.dispatcher.broadcast_to_room(room.room_id, {
            "type": "spinner_start",
            "roomId": room.room_id,
            "playerOrder": order,
            "totalSteps": final_step,
            "startedBy": started_by,
            "winnerDuration": run.winner_duration_ms,
        })
        logger.info("Spinner started by %s in room %s (%d players, %d steps)",
                    started_by, room.room_id, len(order), final_step)

        room.spinner_task = asyncio.create_task(self._run(room, run))
        return run

    async def _run(self, room, run: SpinnerRun):
        try:
            while True:
                async with room.lock:
                    if not self.dispatcher.room_exists(room) or room.spinner is not run:
                        logger.debug("Spinner in room %s aborted, room is gone", room.room_id)
                        return
                    if run.finished:
                        await self._finish(room, run)
                        return
                    await self.dispatcher.broadcast_to_room(room.room_id, {
                        "type": "spinner_highlight",
                        "roomId": room.room_id,
                        "highlightedPlayerId": run.current_player_id,
                        "step": run.current_step,
                        "totalSteps": run.final_step,
                    })
                    run.advance()
                    delay = tick_delay_ms(run.current_step, run.final_step,
                                          self.min_delay_ms, self.max_delay_ms)
                await asyncio.sleep(delay / 1000)
        except asyncio.CancelledError:
            logger.debug("Spinner task cancelled for room %s", room.room_id)

    async def _finish(self, room, run: SpinnerRun):
        winner_id = run.current_player_id
        player = room.players.get(winner_id)
        winner_name = player["name"] if player else run.player_names[winner_id]

        room.spinner = None
        room.spinner_task = None

        logger.info("Spinner finished in room %s, winner: %s (%s)",
                    room.room_id, winner_name, winner_id)
        await self.dispatcher.broadcast_to_room(room.room_id, {
            "type": "spinner_result",
            "roomId": room.room_id,
            "winnerId": winner_id,
            "winnerName": winner_name,
            "winnerDuration": run.winner_duration_ms,
            "message": f"{winner_name} was chosen!",
        })
        if player:
            await self.dispatcher.send_to_client(winner_id, {
                "type": "led_command",
                "action": config.WINNER_HIGHLIGHT_ACTION,
                "duration": run.winner_duration_ms,
                "from": "spinner",
                "fromName": "Spinner",
                "timestamp": now_ms(),
            })

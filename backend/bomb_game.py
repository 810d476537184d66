"""Dice & bomb mini-game: roll for points, earn a bomb, knock down a rival."""

import logging
import random
from dataclasses import asdict, dataclass
from typing import Optional

import config
from errors import NotFoundError, StateError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class BombGameSettings:
    points_for_bomb: int = config.POINTS_FOR_BOMB
    bomb_damage_percent: int = config.BOMB_DAMAGE_PERCENT
    max_points: int = config.MAX_POINTS
    win_condition_enabled: bool = config.WIN_CONDITION_ENABLED

    def to_dict(self) -> dict:
        return {
            "pointsForBomb": self.points_for_bomb,
            "bombDamagePercent": self.bomb_damage_percent,
            "maxPoints": self.max_points,
            "winConditionEnabled": self.win_condition_enabled,
        }


class BombGame:
    """Per-room game state. Player fields live on the room's player records."""

    def __init__(self, settings: BombGameSettings):
        self.settings = settings
        self.winner_id: Optional[str] = None


def reset_player(player: dict):
    player["points"] = 0
    player["dice_value"] = 1
    player["has_bomb"] = False


class BombEngine:
    def __init__(self, dispatcher, rng=None):
        self.dispatcher = dispatcher
        self.rng = rng or random.Random()

    def initialize(self, room, overrides: Optional[dict] = None) -> BombGame:
        """Start a fresh game in ``room``, resetting every current player."""
        settings = BombGameSettings(**{**asdict(BombGameSettings()), **(overrides or {})})
        for player in room.players.values():
            reset_player(player)
        room.bomb_game = BombGame(settings)
        logger.info("Bomb game initialized in room %s: %s", room.room_id, settings)
        return room.bomb_game

    def enroll(self, room, player_id: str):
        if room.bomb_game is not None and player_id in room.players:
            reset_player(room.players[player_id])

    def _require_game(self, room) -> BombGame:
        game = room.bomb_game
        if game is None:
            raise StateError("No game in progress, reset the game to start one")
        if game.winner_id is not None:
            raise StateError("Game over, reset the game to play again")
        return game

    def _require_player(self, room, player_id: str) -> dict:
        player = room.players.get(player_id)
        if player is None:
            raise NotFoundError(f"Player {player_id} not found")
        return player

    async def roll_dice(self, room, player_id: str) -> int:
        game = self._require_game(room)
        player = self._require_player(room, player_id)
        if player["has_bomb"]:
            raise StateError("Use your bomb before rolling again")

        dice = self.rng.randint(1, 6)
        player["dice_value"] = dice
        player["points"] = min(game.settings.max_points, player["points"] + dice)
        logger.info("%s rolled %d in room %s (%d points)",
                    player["name"], dice, room.room_id, player["points"])

        await self.dispatcher.broadcast_to_room(room.room_id, {
            "type": "dice_rolled",
            "playerId": player_id,
            "diceValue": dice,
            "newPoints": player["points"],
            "players": room.get_player_list(),
        })

        # Arming keeps the points; only using the bomb changes state back
        if player["points"] >= game.settings.points_for_bomb and not player["has_bomb"]:
            player["has_bomb"] = True
            await self.dispatcher.broadcast_to_room(room.room_id, {
                "type": "bomb_available",
                "playerId": player_id,
                "players": room.get_player_list(),
            })

        await self._check_winner(room, game)
        return dice

    async def use_bomb(self, room, bomber_id: str, target_id: str) -> int:
        game = self._require_game(room)
        bomber = self._require_player(room, bomber_id)
        if not bomber["has_bomb"]:
            raise StateError("You don't have a bomb")
        if target_id == bomber_id:
            raise ValidationError("You can't bomb yourself")
        target = self._require_player(room, target_id)

        damage = target["points"] * game.settings.bomb_damage_percent // 100
        target["points"] = max(0, target["points"] - damage)
        bomber["has_bomb"] = False
        logger.info("%s bombed %s in room %s for %d damage",
                    bomber["name"], target["name"], room.room_id, damage)

        await self.dispatcher.broadcast_to_room(room.room_id, {
            "type": "bomb_used",
            "bomberId": bomber_id,
            "targetId": target_id,
            "damage": damage,
            "targetNewPoints": target["points"],
            "players": room.get_player_list(),
        })
        await self._check_winner(room, game)
        return damage

    async def _check_winner(self, room, game: BombGame):
        if not game.settings.win_condition_enabled or game.winner_id is not None:
            return
        leaders = [p for p in room.players.values()
                   if p.get("points", 0) >= game.settings.max_points]
        if not leaders:
            return
        winner = max(leaders, key=lambda p: p["points"])
        game.winner_id = winner["id"]
        logger.info("%s won the bomb game in room %s", winner["name"], room.room_id)
        await self.dispatcher.broadcast_to_room(room.room_id, {
            "type": "game_winner",
            "winnerId": winner["id"],
            "winnerName": winner["name"],
            "players": room.get_player_list(),
        })

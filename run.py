import argparse
import asyncio
import logging
import os
import sys

from duelcore.balance_cache import BalanceCache
from duelcore.client import DuelClient
from duelcore.errors import DuelError
from duelcore.events import GameEnded, PhaseChanged, ResignTimedOut, ServerErrorReceived, SnapshotApplied
from duelcore.spectator import SpectatorEnded, SpectatorFailed

logger = logging.getLogger("duelcore.run")


def _print_event(event) -> None:
    if isinstance(event, PhaseChanged):
        print(f"phase: {event.previous.value} -> {event.current.value}")
    elif isinstance(event, SnapshotApplied):
        snap = event.snapshot
        turn = "your move" if snap.is_local_turn else "opponent's move"
        print(f"[{snap.identity}] {snap.board_state} ({turn})")
    elif isinstance(event, GameEnded):
        print(f"{event.result.reason_text} (stake {event.result.stake_delta:+d})")
    elif isinstance(event, ResignTimedOut):
        print("Resign not confirmed by the server yet")
    elif isinstance(event, ServerErrorReceived):
        print(f"server error: {event.code} {event.message}")


async def main(args) -> int:
    token = os.environ.get("DUEL_TOKEN")
    if not token:
        print("Set DUEL_TOKEN to an auth token", file=sys.stderr)
        return 2

    client = DuelClient(token=token, cache=BalanceCache())
    client.session.subscribe(_print_event)
    client.connection.on_state(lambda state: print(f"connection: {state.value}"))
    finished = asyncio.Event()
    client.connection.on_terminal(lambda lost: finished.set())
    client.session.subscribe(lambda e: finished.set() if isinstance(e, GameEnded) else None)

    try:
        await client.start()
        print(f"balance: {client.known_balance}")
        if args.resume:
            client.resume(args.resume)
        elif args.join:
            lobby = await client.join_lobby(args.join)
            print(f"joined lobby {lobby.code} ({lobby.status.value})")
        elif args.host:
            lobby = await client.create_lobby(args.wager)
            print(f"lobby code: {lobby.code}")
        elif args.spectate:
            spectator = client.spectate(args.spectate)
            spectator.subscribe(print)
            spectator.subscribe(
                lambda e: finished.set() if isinstance(e, (SpectatorEnded, SpectatorFailed)) else None
            )
        else:
            client.find_match(args.wager, args.name)
        await finished.wait()
    except DuelError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Console client for the duel match server")
    parser.add_argument("--wager", type=int, default=0)
    parser.add_argument("--name", default=None)
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--host", action="store_true", help="create a private lobby")
    group.add_argument("--join", metavar="CODE", help="join a private lobby")
    group.add_argument("--resume", metavar="GAME_ID", help="rejoin a game by its persisted id")
    group.add_argument("--spectate", metavar="USER_ID", help="watch another player's game")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        sys.exit(130)

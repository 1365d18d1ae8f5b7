import math # For round counts
import random # For swiss round 1 and coin-flip tie-breaks
from typing import Callable, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Set, Tuple

from chessarena.models.tournament_model import (
    PairingResult,
    ParticipantModel,
    RoundModel,
    Tiebreakers,
    TournamentModel,
    TournamentType,
)

WIN_POINTS = 1.0
DRAW_POINTS = 0.5

Pair = Tuple[str, str] # (white, black)


class RoundPlan(NamedTuple):
    pairs: List[Pair]
    byes: List[str]


def seed_participants(participants: List[ParticipantModel]) -> List[str]:
    """
    Orders players for pairing.
    Explicit seeds come first in seed order; everyone else follows by
    descending rating, then registration time.
    """
    seeded = sorted((p for p in participants if p.seed is not None), key=lambda p: p.seed)
    unseeded = sorted((p for p in participants if p.seed is None), key=lambda p: (-p.rating, p.registered_at))
    return [p.player for p in seeded + unseeded]


def total_rounds(tournament_type: str, num_players: int) -> int:
    if num_players < 2:
        return 0
    if tournament_type == TournamentType.SINGLE_ELIMINATION:
        return math.ceil(math.log2(num_players))
    if tournament_type == TournamentType.SWISS:
        return math.ceil(math.log2(num_players)) + 1
    # Round-robin and seasonal leagues: everyone meets everyone once
    return num_players - 1 if num_players % 2 == 0 else num_players


def single_elimination_round(player_ids: List[str], had_bye: Iterable[str] = ()) -> RoundPlan:
    """
    Pairs 1v2, 3v4, ... With an odd count the lowest-placed player who has
    not had a bye yet sits out and advances.
    """
    players = list(player_ids)
    byes = []
    if len(players) % 2:
        had_bye = set(had_bye)
        candidates = [p for p in reversed(players) if p not in had_bye]
        bye = candidates[0] if candidates else players[-1]
        players.remove(bye)
        byes.append(bye)
    pairs = [(players[i], players[i + 1]) for i in range(0, len(players), 2)]
    return RoundPlan(pairs=pairs, byes=byes)


def round_robin_schedule(player_ids: List[str]) -> List[RoundPlan]:
    """
    Circle method: the first player stays fixed while the rest rotate.
    An odd field gets a phantom opponent; whoever draws it sits the round out.
    """
    players: List[Optional[str]] = list(player_ids)
    if len(players) < 2:
        return []
    if len(players) % 2:
        players.append(None)

    n = len(players)
    schedule = []
    for round_index in range(n - 1):
        pairs, byes = [], []
        for i in range(n // 2):
            a, b = players[i], players[n - 1 - i]
            if a is None or b is None:
                byes.append(a if b is None else b)
                continue
            # Alternate colours for the fixed player so nobody is always white
            if i == 0 and round_index % 2:
                a, b = b, a
            pairs.append((a, b))
        schedule.append(RoundPlan(pairs=pairs, byes=byes))
        players = [players[0], players[-1]] + players[1:-1]
    return schedule


def swiss_round(ranked_ids: List[str], round_number: int,
                played: Set[FrozenSet[str]], had_bye: Set[str],
                rng: Optional[random.Random] = None) -> RoundPlan:
    """
    Round 1 is a random draw. Later rounds pair neighbours in the standings,
    skipping ahead to avoid a rematch when another candidate exists.
    """
    rng = rng or random.Random()
    order = list(ranked_ids)
    if round_number == 1:
        order = rng.sample(order, len(order))

    byes = []
    if len(order) % 2:
        # Lowest-ranked player who has not had a bye yet
        candidates = [p for p in reversed(order) if p not in had_bye]
        bye = candidates[0] if candidates else order[-1]
        order.remove(bye)
        byes.append(bye)

    pairs = []
    while order:
        white = order.pop(0)
        index = next((i for i, p in enumerate(order) if frozenset((white, p)) not in played), 0)
        pairs.append((white, order.pop(index)))
    return RoundPlan(pairs=pairs, byes=byes)


def played_pairs(tournament: TournamentModel) -> Set[FrozenSet[str]]:
    return {frozenset((g.white, g.black)) for r in tournament.rounds for g in r.games}


# Elimination tie-break policies: (white, black, seeds) -> advancing player

TiebreakPolicy = Callable[[str, str, Dict[str, int]], str]


def random_tiebreak(white: str, black: str, seeds: Dict[str, int], rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice([white, black])


def higher_seed_tiebreak(white: str, black: str, seeds: Dict[str, int]) -> str:
    missing = len(seeds) + 1
    return white if seeds.get(white, missing) <= seeds.get(black, missing) else black


TIEBREAK_POLICIES: Dict[str, TiebreakPolicy] = {
    "random": random_tiebreak,
    "higher_seed": higher_seed_tiebreak,
}


def get_tiebreak_policy(name: str) -> TiebreakPolicy:
    if name not in TIEBREAK_POLICIES:
        raise ValueError(f"Unknown elimination tie-break policy: {name}")
    return TIEBREAK_POLICIES[name]


def advancing_players(round_model: RoundModel, seeds: Dict[str, int],
                      tiebreak: TiebreakPolicy) -> Tuple[List[str], List[str]]:
    """Returns (winners in bracket order, eliminated players) for a decided elimination round."""
    winners, losers = [], []
    for pairing in round_model.games:
        if pairing.result == PairingResult.WHITE:
            winner = pairing.white
        elif pairing.result == PairingResult.BLACK:
            winner = pairing.black
        elif pairing.result == PairingResult.DRAW:
            winner = tiebreak(pairing.white, pairing.black, seeds)
        else:
            raise ValueError(f"Pairing {pairing.match_index} in round {pairing.round} is undecided")
        winners.append(winner)
        losers.append(pairing.black if winner == pairing.white else pairing.white)
    winners.extend(round_model.byes)
    return winners, losers


def apply_result(participants: Iterable[ParticipantModel], white: str, black: str, result: str) -> None:
    """Feeds one decided pairing into both players' records."""
    by_id = {p.player: p for p in participants}
    white_p, black_p = by_id.get(white), by_id.get(black)
    if result == PairingResult.DRAW:
        for p in (white_p, black_p):
            if p:
                p.draws += 1
                p.score += DRAW_POINTS
        return
    winner, loser = (white_p, black_p) if result == PairingResult.WHITE else (black_p, white_p)
    if winner:
        winner.wins += 1
        winner.score += WIN_POINTS
    if loser:
        loser.losses += 1


def award_bye_points(participant: ParticipantModel, round_number: int) -> None:
    participant.wins += 1
    participant.score += WIN_POINTS
    participant.bye_rounds = participant.bye_rounds + [round_number]


def compute_tiebreakers(tournament: TournamentModel) -> Dict[str, Tiebreakers]:
    """
    Buchholz: sum of the scores of everyone a player faced.
    Sonneborn-Berger: scores of beaten opponents plus half the scores of drawn ones.
    Byes count for neither.
    """
    scores = {p.player: p.score for p in tournament.participants}
    tiebreakers = {p.player: Tiebreakers() for p in tournament.participants}
    for round_model in tournament.rounds:
        for g in round_model.games:
            if g.result == PairingResult.PENDING:
                continue
            for me, opponent in ((g.white, g.black), (g.black, g.white)):
                if me not in tiebreakers:
                    continue
                opponent_score = scores.get(opponent, 0.0)
                tiebreakers[me].buchholz += opponent_score
                if g.result == PairingResult.DRAW:
                    tiebreakers[me].sonneborn += opponent_score / 2
                elif (g.result == PairingResult.WHITE) == (me == g.white):
                    tiebreakers[me].sonneborn += opponent_score
    return tiebreakers


def refresh_tiebreakers(tournament: TournamentModel) -> None:
    tiebreakers = compute_tiebreakers(tournament)
    for p in tournament.participants:
        p.tiebreakers = tiebreakers[p.player]


def standings(participants: List[ParticipantModel]) -> List[ParticipantModel]:
    return sorted(
        participants,
        key=lambda p: (-p.score, -p.tiebreakers.buchholz, -p.tiebreakers.sonneborn),
    )


def final_ranking(tournament: TournamentModel, champion: Optional[str] = None) -> List[str]:
    """
    Standings order, except that in an elimination bracket the champion is
    first and players who survived more rounds rank above earlier exits.
    """
    ordered = standings(tournament.participants)
    if tournament.type != TournamentType.SINGLE_ELIMINATION:
        return [p.player for p in ordered]

    rounds_reached: Dict[str, int] = {}
    for number, round_model in enumerate(tournament.rounds, start=1):
        for player in [g.white for g in round_model.games] + [g.black for g in round_model.games] + round_model.byes:
            rounds_reached[player] = number
    ordered = sorted(ordered, key=lambda p: (p.player != champion, -rounds_reached.get(p.player, 0)))
    return [p.player for p in ordered]

"""
Pareto-based selection strategies for the evolutionary process.

ParetoSelector ranks (program, FitnessScore) pairs with non-dominated
sorting and crowding distance (NSGA-II style), and provides tournament,
elite and diversity selection for when the frontier alone cannot fill a
request.
"""

import logging
import math
import random
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..entities import FitnessScore
from .config import EvolutionConfig


logger = logging.getLogger(__name__)

ScoredProgram = Tuple[Any, FitnessScore]


def objectives_for(scores: Sequence[FitnessScore]) -> List[str]:
    """All objective dimensions present across a set of scores."""
    names = {"primary_score", "overall_score"}
    for score in scores:
        names.update(score.secondary_scores)
    return sorted(names)


class ParetoSelector:
    """Multi-objective selection using Pareto frontier analysis."""

    def __init__(self, config: Optional[EvolutionConfig] = None,
                 rng: Optional[random.Random] = None):
        self.config = config or EvolutionConfig()
        self.rng = rng or random.Random(self.config.random_seed)

    def find_pareto_frontier(self, fitness_scores: Sequence[FitnessScore]) -> List[FitnessScore]:
        """
        Scores not dominated by any other score, in input order.

        overall_score is one of the objectives, so a member with the highest
        overall score is always part of the frontier.
        """
        if len(fitness_scores) <= 1:
            return list(fitness_scores)

        return [
            candidate for candidate in fitness_scores
            if not any(other.dominates(candidate) for other in fitness_scores)
        ]

    def calculate_crowding_distance(self, fitness_scores: Sequence[FitnessScore]) -> Dict[FitnessScore, float]:
        """
        Crowding distance for each distinct score value.

        Boundary solutions on any non-degenerate objective get an infinite
        distance; interior solutions accumulate normalized neighbour gaps.
        """
        unique = list(dict.fromkeys(fitness_scores))
        distances = {score: 0.0 for score in unique}

        if len(unique) <= 2:
            return {score: math.inf for score in unique}

        for objective in objectives_for(unique):
            ordered = sorted(unique, key=lambda s: s.objective_value(objective))
            min_val = ordered[0].objective_value(objective)
            max_val = ordered[-1].objective_value(objective)
            value_range = max_val - min_val
            if value_range <= 0:
                continue

            for i, score in enumerate(ordered):
                value = score.objective_value(objective)
                # every score tied at an extreme is a boundary
                if value == min_val or value == max_val:
                    distances[score] = math.inf
                    continue
                gap = (ordered[i + 1].objective_value(objective)
                       - ordered[i - 1].objective_value(objective))
                distances[score] += gap / value_range

        return distances

    def select_parents(self, population_with_scores: Sequence[ScoredProgram],
                       count: int) -> List[Any]:
        """
        Choose parents, preferring frontier members with large crowding distance.

        Falls back to tournament selection for slots the frontier cannot fill.
        """
        count = min(count, len(population_with_scores))
        if count <= 0:
            return []

        scores = [score for _, score in population_with_scores]
        frontier = set(self.find_pareto_frontier(scores))
        distances = self.calculate_crowding_distance(scores)

        frontier_indices = [i for i, s in enumerate(scores) if s in frontier]
        frontier_indices.sort(key=lambda i: -distances[scores[i]])

        selected = [population_with_scores[i][0] for i in frontier_indices[:count]]
        while len(selected) < count:
            selected.append(self.tournament_selection(population_with_scores))
        return selected

    def select_survivors(self, population_with_scores: Sequence[ScoredProgram],
                         count: int) -> List[Any]:
        """Assemble distinct survivors: half elite by overall score, rest by diversity."""
        count = min(count, len(population_with_scores))
        if count <= 0:
            return []

        elite_count = math.ceil(count / 2)
        chosen = self._elite_indices(population_with_scores)[:elite_count]

        for index in self._diversity_indices(population_with_scores):
            if len(chosen) >= count:
                break
            if index not in chosen:
                chosen.append(index)

        return [population_with_scores[i][0] for i in chosen]

    def tournament_selection(self, population_with_scores: Sequence[ScoredProgram]) -> Any:
        """Winner of a small random tournament by overall score."""
        if not population_with_scores:
            raise ValueError("Cannot run a tournament on an empty population")
        if len(population_with_scores) == 1:
            return population_with_scores[0][0]

        size = min(self.config.tournament_size, len(population_with_scores))
        tournament = self.rng.sample(list(population_with_scores), size)
        frontier = set(self.find_pareto_frontier([s for _, s in population_with_scores]))

        winner = max(tournament, key=lambda pair: (pair[1].overall_score, pair[1] in frontier))
        return winner[0]

    def elite_selection(self, population_with_scores: Sequence[ScoredProgram],
                        count: int) -> List[Any]:
        """Top programs by descending overall score."""
        indices = self._elite_indices(population_with_scores)[:max(count, 0)]
        return [population_with_scores[i][0] for i in indices]

    def diversity_selection(self, population_with_scores: Sequence[ScoredProgram],
                            count: int) -> List[Any]:
        """Top programs by descending crowding distance."""
        indices = self._diversity_indices(population_with_scores)[:max(count, 0)]
        return [population_with_scores[i][0] for i in indices]

    def _elite_indices(self, population_with_scores: Sequence[ScoredProgram]) -> List[int]:
        return sorted(range(len(population_with_scores)),
                      key=lambda i: -population_with_scores[i][1].overall_score)

    def _diversity_indices(self, population_with_scores: Sequence[ScoredProgram]) -> List[int]:
        scores = [score for _, score in population_with_scores]
        distances = self.calculate_crowding_distance(scores)
        return sorted(range(len(scores)),
                      key=lambda i: (-distances[scores[i]], -scores[i].overall_score))

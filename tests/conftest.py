# Full board except (0, 3) after a LEFT move; any tile spawned there leaves no pair.
# The move itself merges the two 2s in the top row for 4 points.
GAME_OVER_GRID = [
    [2, 2, 16, 8],
    [8, 4, 2, 16],
    [2, 8, 4, 2],
    [4, 2, 8, 4],
]


class ScriptedRandom:
    """Random source that replays queued values, then falls back to fixed ones."""

    def __init__(self, indices=None, floats=None):
        self.indices = list(indices or [])
        self.floats = list(floats or [])

    def randrange(self, stop):
        index = self.indices.pop(0) if self.indices else 0
        assert 0 <= index < stop
        return index

    def random(self):
        return self.floats.pop(0) if self.floats else 0.5

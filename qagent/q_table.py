import numpy as np


class UnknownState(KeyError):
    """Update addressed a state that was never initialized."""


class ActionIndexOutOfRange(IndexError):
    """Update addressed an action outside the fixed action set."""


class QTable:
    """
    Mapping from state key to a row of action values.

    Rows are created lazily (all zeros) on first reference and are never
    reset or removed afterwards.
    """

    def __init__(self, n_actions: int):
        if n_actions <= 0:
            raise ValueError("n_actions must be positive")
        self.n_actions = n_actions
        self._rows: dict[str, np.ndarray] = {}

    def get_or_init(self, key: str) -> np.ndarray:
        row = self._rows.get(key)
        if row is None:
            row = np.zeros(self.n_actions, dtype=float)
            self._rows[key] = row
        return row

    def lookup(self, key: str) -> np.ndarray:
        """Row for `key`, or a detached zero row when the state is unseen."""
        row = self._rows.get(key)
        if row is None:
            return np.zeros(self.n_actions, dtype=float)
        return row

    def update(self, key: str, action: int, value: float) -> None:
        if key not in self._rows:
            raise UnknownState(key)
        if not 0 <= action < self.n_actions:
            raise ActionIndexOutOfRange(f"action {action} not in [0, {self.n_actions})")
        self._rows[key][action] = value

    def value(self, key: str, action: int) -> float:
        if key not in self._rows:
            raise UnknownState(key)
        return float(self._rows[key][action])

    def keys(self):
        return self._rows.keys()

    def as_dict(self) -> dict[str, np.ndarray]:
        """
        Return a copy of the table as a regular dictionary.
        """
        return {key: row.copy() for key, row in self._rows.items()}

    def __contains__(self, key: object) -> bool:
        return key in self._rows

    def __len__(self) -> int:
        return len(self._rows)

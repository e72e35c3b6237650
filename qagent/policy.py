import numpy as np

# Epsilon-greedy action selection and the exploration schedules used by the runners


def greedy_actions(qrow: np.ndarray) -> np.ndarray:
    """
    Indices whose value equals the row maximum (exact comparison, ties are
    the norm while rows are still all zero).
    """
    return np.flatnonzero(qrow == np.max(qrow))


def select(qrow: np.ndarray, epsilon: float, rng: np.random.Generator) -> int:
    """
    Choose an action index with an epsilon-greedy policy.

    With probability epsilon the action is drawn uniformly from the whole
    action set (the greedy action included); otherwise it is drawn uniformly
    from the set of maximal actions.
    """
    if rng.random() < epsilon:
        # explore: any action
        return int(rng.integers(0, qrow.shape[0]))
    # exploit: uniform tie-break among the best actions
    return int(rng.choice(greedy_actions(qrow)))


def annealed_linear(eps_start: float, eps_end: float, n_episodes: int):
    """
    Linear annealing from eps_start -> eps_end over the episodes of one map.
    Usage: eps_fn = annealed_linear(0.5, 0.01, n_episodes=200)
           eps = eps_fn(episode)
    """
    total = max(1, n_episodes - 1)
    def fn(episode: int) -> float:
        frac = min(max(episode / total, 0.0), 1.0)
        return eps_start + (eps_end - eps_start) * frac
    return fn


def fixed_eps_schedule(eps: float):
    """
    Create a function returning a fixed exploration rate.
    """
    return lambda episode: eps

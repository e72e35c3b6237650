from __future__ import annotations

import argparse
from pathlib import Path
import json
from typing import Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from cliff_gym import DEPTH, WIDTH
from qagent.q_table import QTable
from qagent.state_key import parse_key

# Where each action's marker sits inside a grid cell: north, south, west, east
ACTION_OFFSETS = ((0.5, 0.1), (0.5, 0.9), (0.1, 0.5), (0.9, 0.5))
# Colour range for action values
Q_MIN, Q_MAX = -20.0, 20.0

# ---------- Helpers ----------

def find_latest_results_dir(base: Path) -> Optional[Path]:
    if not base.exists():
        return None
    dirs = [p for p in base.iterdir() if p.is_dir()]
    if not dirs:
        return None
    dirs.sort(key=lambda p: p.name, reverse=True)
    return dirs[0]


def ensure_fig_dir(d: Path) -> Path:
    d.mkdir(parents=True, exist_ok=True)
    return d


def savefig(fig, outdir: Path, name: str) -> Path:
    outdir = ensure_fig_dir(outdir)
    path = outdir / f"{name}.png"
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    print(f"[saved] {path}")
    return path


def load_csv_maybe(path: Path) -> Optional[pd.DataFrame]:
    if path.exists():
        try:
            return pd.read_csv(path)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            print(f"[warn] could not load {path}: {e}")
    return None

def load_summary(results_dir: Path) -> Optional[pd.DataFrame]:
    return load_csv_maybe(results_dir / "experiment_summary.csv")


def load_all(results_dir: Path, pattern: str) -> Optional[pd.DataFrame]:
    frames = []
    for f in sorted(results_dir.glob(pattern)):
        df = load_csv_maybe(f)
        if df is not None:
            frames.append(df)
    if frames:
        return pd.concat(frames, ignore_index=True)
    return None


# ---------- Plots ----------

def plot_learning_curves(summary: pd.DataFrame, out: Path, rolling: int = 20):
    df = summary.sort_values(["map", "episode"])

    fig, ax = plt.subplots(figsize=(10, 6))
    for map_idx, g in df.groupby("map"):
        ax.plot(g["episode"], g["return"], alpha=0.25, linewidth=1, label=f"map {map_idx}")
    ax.set_title("Learning curves: return per episode (one line per map)")
    ax.set_xlabel("Episode")
    ax.set_ylabel("Return")
    savefig(fig, out, "learning_curves_all_maps")

    grp = df.groupby("episode")["return"]
    agg = pd.DataFrame({"mean": grp.mean(), "std": grp.std(ddof=0)}).reset_index()
    agg["mean_roll"] = agg["mean"].rolling(rolling, min_periods=max(1, rolling // 2)).mean()

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(agg["episode"], agg["mean_roll"].fillna(agg["mean"]), linewidth=2)
    ax.fill_between(agg["episode"], (agg["mean"] - agg["std"]).values,
                    (agg["mean"] + agg["std"]).values, alpha=0.15)
    ax.set_title(f"Learning curve: mean ± std over maps (rolling={rolling})")
    ax.set_xlabel("Episode")
    ax.set_ylabel("Return")
    savefig(fig, out, "learning_curve_mean_std")


def plot_train_metrics(train: pd.DataFrame, out: Path, rolling: int = 20):
    df = train.sort_values(["map", "episode"])

    for metric, title in [
        ("steps", "Training: decisions per episode"),
        ("states_visited", "Training: states in the Q-table"),
        ("skipped", "Training: ticks lost to malformed observations"),
    ]:
        g = df.groupby("episode")[metric].mean().reset_index()
        g["roll"] = g[metric].rolling(rolling, min_periods=max(1, rolling // 2)).mean()
        fig, ax = plt.subplots(figsize=(10, 6))
        ax.plot(g["episode"], g["roll"].fillna(g[metric]), linewidth=2)
        ax.set_title(title)
        ax.set_xlabel("Episode")
        ax.set_ylabel(metric)
        savefig(fig, out, f"train_{metric}")

    counts = df.groupby("outcome").size()
    fig, ax = plt.subplots(figsize=(7, 5))
    ax.bar(counts.index.astype(str), counts.values)
    ax.set_title("Training: how episodes ended")
    ax.set_ylabel("Episodes")
    savefig(fig, out, "train_outcomes")


def plot_eval_metrics(eval_df: pd.DataFrame, out: Path):
    g = eval_df.groupby(["map", "block_episode"])["return"].mean().reset_index()
    fig, ax = plt.subplots(figsize=(10, 6))
    for map_idx, gg in g.groupby("map"):
        ax.plot(gg["block_episode"], gg["return"], linewidth=2, marker="o", label=f"map {map_idx}")
    ax.set_title("Evaluation: greedy return per block")
    ax.set_xlabel("Training episode")
    ax.set_ylabel("Return")
    ax.legend()
    savefig(fig, out, "eval_return_by_block")


def plot_q_table(q_table: QTable, out: Path, name: str = "q_table",
                 width: int = WIDTH, depth: int = DEPTH) -> Path:
    """
    Draw the table on the world grid: one marker per action at the cell
    edge it moves towards, coloured from red (Q_MIN) to green (Q_MAX).
    """
    fig, ax = plt.subplots(figsize=(width * 0.6, depth * 0.6))
    ax.set_xlim(0, width)
    ax.set_ylim(depth, 0)
    ax.set_aspect("equal")
    ax.set_xticks(np.arange(width + 1))
    ax.set_yticks(np.arange(depth + 1))
    ax.grid(True, color="black", linewidth=0.5)
    ax.set_facecolor("white")

    xs, zs, values = [], [], []
    for key, row in q_table.as_dict().items():
        x, z = parse_key(key)
        if not (0 <= x < width and 0 <= z < depth):
            continue
        for (dx, dz), value in zip(ACTION_OFFSETS, row):
            xs.append(x + dx)
            zs.append(z + dz)
            values.append(value)
    if values:
        points = ax.scatter(xs, zs, c=np.clip(values, Q_MIN, Q_MAX), cmap="RdYlGn",
                            vmin=Q_MIN, vmax=Q_MAX, s=40, edgecolors="none")
        fig.colorbar(points, ax=ax, label="Q")
    ax.set_title(f"Q-table ({len(q_table)} states)")
    ax.set_xlabel("x")
    ax.set_ylabel("z")
    return savefig(fig, out, name)


# ---------- Main ----------

def main():
    ap = argparse.ArgumentParser()
    ap.add_argument('--dir', type=str, default=None, help='Results directory (default: newest under ./results)')
    ap.add_argument('--rolling', type=int, default=20, help='Window of the rolling means')
    args = ap.parse_args()

    base = Path('results')
    if args.dir:
        results_dir = Path(args.dir)
    else:
        results_dir = find_latest_results_dir(base)
    if results_dir is None or not results_dir.exists():
        print('[error] No results directory found. Pass --dir <path> or run run_experiment.py first.')
        return

    print(f"[info] results-dir: {results_dir}")
    fig_dir = ensure_fig_dir(results_dir / 'plots')

    meta_path = results_dir / 'run_meta.json'
    if meta_path.exists():
        try:
            meta = json.loads(meta_path.read_text())
            print('[meta]', json.dumps(meta, indent=2))
        except json.JSONDecodeError as e:
            print(f'[warn] run_meta.json unreadable: {e}')

    summary = load_summary(results_dir)
    if summary is not None and not summary.empty:
        plot_learning_curves(summary, fig_dir, rolling=args.rolling)
    else:
        print('[warn] experiment_summary.csv missing or empty, skipping learning curves')

    train_df = load_all(results_dir, "train_metrics_map*.csv")
    if train_df is not None and not train_df.empty:
        plot_train_metrics(train_df, fig_dir, rolling=args.rolling)
    else:
        print('[warn] no train_metrics_*.csv, skipping training plots')

    eval_df = load_all(results_dir, "eval_metrics_map*.csv")
    if eval_df is not None and not eval_df.empty:
        plot_eval_metrics(eval_df, fig_dir)
    else:
        print('[warn] no eval_metrics_*.csv, skipping evaluation plots')

    print(f"Done. Plots are in: {fig_dir}")


if __name__ == '__main__':
    main()

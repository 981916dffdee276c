#!/usr/bin/env python3
"""
Generate a training report with a convergence plot and metrics.
Parses the `Step#<i>: loss=<value>` lines of a captured training log.
"""

import argparse
import json
import re
from pathlib import Path

try:
    import matplotlib.pyplot as plt
    HAS_MATPLOTLIB = True
except ImportError:
    HAS_MATPLOTLIB = False

STEP_PATTERN = re.compile(r"Step#(\d+): loss=([0-9.eE+-]+|nan|inf)")


def parse_training_log(log_file):
    """Extract (step, loss) pairs from a training log."""
    steps = []
    losses = []

    with open(log_file, encoding="utf-8") as f:
        for line in f:
            match = STEP_PATTERN.search(line)
            if match:
                steps.append(int(match.group(1)))
                losses.append(float(match.group(2)))

    return steps, losses


def generate_report(log_file, output_dir):
    """Write training_metrics.json (and convergence.png when matplotlib is available)."""
    log_file = Path(log_file)
    output_dir = Path(output_dir)

    print("=== Mesh Texture Field Training Report ===\n")

    if not log_file.exists():
        print(f"ERROR: training log not found at {log_file}")
        print("Capture one with:")
        print("  python3 train_surface_field.py MESH GRID 2>&1 | tee training.log")
        return 1

    steps, losses = parse_training_log(log_file)
    if not losses:
        print(f"No 'Step#i: loss=' lines found in {log_file}")
        return 1

    print(f"Reports logged: {len(losses)}")
    print(f"Last step: {steps[-1]}")
    print(f"Initial loss: {losses[0]:.6f}")
    print(f"Final loss: {losses[-1]:.6f}")
    reduction = (1 - losses[-1] / losses[0]) * 100 if losses[0] else 0.0
    print(f"Loss reduction: {reduction:.1f}%\n")

    metrics = {
        "steps": steps,
        "losses": losses,
        "initial_loss": losses[0],
        "final_loss": losses[-1],
        "reduction_percent": reduction,
    }

    output_dir.mkdir(parents=True, exist_ok=True)
    metrics_path = output_dir / "training_metrics.json"
    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump(metrics, f, indent=2)
    print(f"Training metrics saved: {metrics_path}")

    if HAS_MATPLOTLIB:
        plt.figure(figsize=(10, 6))
        # Step 0 cannot sit on a log axis.
        plt.plot([max(s, 1) for s in steps], losses, linewidth=2, marker="o", color="#667eea")
        plt.xscale("log")
        plt.yscale("log")
        plt.xlabel("Step", fontsize=12)
        plt.ylabel("Loss", fontsize=12)
        plt.title("Training Convergence", fontsize=14, fontweight="bold")
        plt.grid(True, alpha=0.3, linestyle="--")
        plt.tight_layout()

        plot_path = output_dir / "convergence.png"
        plt.savefig(plot_path, dpi=150, bbox_inches="tight")
        plt.close()
        print(f"Convergence plot saved: {plot_path}")
    else:
        print("matplotlib not available - skipping plot generation")
        print("   Install with: pip install matplotlib")

    print("\n" + "=" * 50)
    print("Report generation complete!")
    print("=" * 50)
    return 0


def main(argv=None):
    ap = argparse.ArgumentParser(description="Summarise a captured training log")
    ap.add_argument("log", nargs="?", default="training.log", help="Training log (default: training.log)")
    ap.add_argument("--out", default="report", help="Output directory (default: report/)")
    args = ap.parse_args(argv)
    return generate_report(args.log, args.out)


if __name__ == "__main__":
    raise SystemExit(main())

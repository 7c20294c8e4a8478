"""
Example 1: Basic Mathematical Optimization
-------------------------------------------

This example uses a trialkit study to find the maximum value of a simple
2D function with a mixed search space.

The objective is to maximize: f(x, y) = -(x - 3)^2 - (y + 2)^2 + 10
The known optimal solution is at (x=3, y=-2), with a value of 10.
"""

import time

import trialkit
from trialkit.samplers import RandomSampler


def objective(trial):
    """
    The objective function to be maximized.

    Args:
        trial (Trial): The trial handle provided by the study.

    Returns:
        float: The value of the function for the suggested hyperparameters.
    """
    x = trial.suggest_uniform("x", -10, 10)
    y = trial.suggest_int("y", -10, 10)

    # Simulate some computational work
    time.sleep(0.01)

    return -(x - 3) ** 2 - (y + 2) ** 2 + 10


def main():
    print("Running Example: Basic Mathematical Optimization")
    print("Goal: Maximize f(x, y) = -(x - 3)^2 - (y + 2)^2 + 10")
    print("--------------------------------------------------")

    study = trialkit.create_study(
        study_name="mathematical_example",
        sampler=RandomSampler(seed=42),
        direction="maximize",
    )
    study.optimize(objective, n_trials=200, n_jobs=4)

    best_trial = study.best_trial
    print("\n----- Analysis -----")
    print(f"Optimal value found: {best_trial.value:.6f} (Expected: 10.0)")
    print(f"Optimal params: x={best_trial.params['x']:.4f}, y={best_trial.params['y']} (Expected: x=3, y=-2)")

    df = study.get_trials_dataframe()
    print(f"\n{len(df)} trials, {int((df['state'] == 'COMPLETE').sum())} complete")


if __name__ == "__main__":
    main()

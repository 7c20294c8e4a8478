import os

import trialkit
from trialkit.samplers import RandomSampler


# Define a simple objective function
def objective(trial):
    x = trial.suggest_uniform("x", -5, 5)
    y = trial.suggest_uniform("y", -5, 5)
    trial.set_user_attr("quadrant", f"{'+' if x >= 0 else '-'}{'+' if y >= 0 else '-'}")
    return (x - 2) ** 2 + (y - 3) ** 2


# Define the database file path
db_file = "trialkit_resume_test.db"
storage_url = f"sqlite:///{db_file}"

# Clean up previous runs if the file exists
if os.path.exists(db_file):
    os.remove(db_file)

print("=" * 60)
print("PART 1: Running initial trials")
print("=" * 60)

study = trialkit.create_study(
    study_name="resume-test",
    storage=storage_url,
    sampler=RandomSampler(seed=0),
    direction="minimize",
)
study.optimize(objective, n_trials=5)

best_trial_part1 = study.best_trial
print(f"\nBest trial from Part 1 is #{best_trial_part1.number} with value {best_trial_part1.value:.4f}")

print("\n... Simulating a restart ...\n")

print("=" * 60)
print("PART 2: Resuming the study")
print("=" * 60)

resumed = trialkit.load_study("resume-test", storage_url, sampler=RandomSampler(seed=1))
print(f"Loaded study with {len(resumed.trials)} existing trials.")
resumed.optimize(objective, n_trials=10)

print(f"\nStudy now has {len(resumed.trials)} trials.")
print(f"Best value: {resumed.best_value:.4f}, params: {resumed.best_params}")

for summary in trialkit.get_all_study_summaries(storage_url):
    print(f"{summary.study_name}: {summary.n_trials} trials, direction={summary.direction.name}")

os.remove(db_file)

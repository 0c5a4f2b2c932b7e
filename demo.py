import logging

import pandas as pd
import numpy as np
from riftmatch import (
    MatchIt,
    derive_treatment,
    fill_missing,
    join_units,
    percent_to_float,
    require_complete,
    required_sample_size,
)

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

# 1. Setup Random Data Generation
rng = np.random.default_rng(42)

n_tank = 30
n_other = 140
names = [f"Champion{i:03d}" for i in range(n_tank + n_other)]

# Two tables keyed on name: champion info and patch statistics
info = pd.DataFrame({
    'name': names,
    'class': ['Tank, Support'] * 10 + ['Tank'] * 20 + ['Mage'] * 50 + ['Marksman'] * 40 + ['Fighter'] * 50,
    'difficulty': np.concatenate([rng.normal(1.4, 0.5, n_tank), rng.normal(2.2, 0.6, n_other)]).round(1),
    'melee': np.concatenate([rng.binomial(1, 0.9, n_tank), rng.binomial(1, 0.4, n_other)]),
    'base_hp': np.concatenate([rng.normal(655, 20, n_tank), rng.normal(610, 30, n_other)]).round(),
})
info.loc[5, 'difficulty'] = np.nan

win = 50 + 0.4 * (info['difficulty'].fillna(2) - 2) + rng.normal(0, 1.2, len(info))
stats = pd.DataFrame({'name': names[::-1], 'win_rate': [f"{w:.2f}%" for w in win[::-1]]})

# 2. Assemble units
champions = join_units(info, stats, on='name')
champions = fill_missing(champions, 'name', {'Champion005': {'difficulty': 1.5}})
champions['tank'] = derive_treatment(champions['class'], 'Tank')
champions['win_rate'] = percent_to_float(champions['win_rate'])
require_complete(champions, ['tank', 'difficulty', 'melee', 'base_hp', 'win_rate'])

print(f"Assembled {len(champions)} champions, {champions['tank'].sum()} tanks")

# 3. Pre-registration: champions per group needed to detect a 1 point win-rate shift
sd = champions['win_rate'].std()
print(f"Required per group for a 0.01 effect: {required_sample_size(min_effect=0.01, sd=sd)}")

# 4. Match and diagnose
for method in ("nearest", "optimal", "full", "subclass"):
    print("---------------------------------------------------")
    estimand = "ATE" if method in ("full", "subclass") else "ATT"
    model = MatchIt(champions, method=method, estimand=estimand, subclass=4)
    model.fit("tank ~ difficulty + melee + base_hp")
    model.summary()

    est = model.estimate_effect('win_rate')
    print(f"\n{method}: effect={est.effect:.4f} se={est.std_error:.4f} t={est.t_stat:.2f} p={est.p_value:.3f}")

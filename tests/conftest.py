"""Shared fixtures: small synthetic effect-size tables."""

import numpy as np
import pandas as pd
import pytest

from mlmeta.effects.effect_sizes import compute_effect_sizes


@pytest.fixture
def smd_studies() -> pd.DataFrame:
    """Two-group summary statistics, 8 labs with 3 effect sizes each."""
    rng = np.random.default_rng(20240501)
    rows = []
    es_id = 0
    for lab in range(8):
        lab_effect = rng.normal(0.0, 0.3)
        for _ in range(3):
            es_id += 1
            n1 = int(rng.integers(15, 60))
            n2 = int(rng.integers(15, 60))
            sd1 = float(rng.uniform(0.8, 1.2))
            sd2 = float(rng.uniform(0.8, 1.2))
            true_effect = 0.4 + lab_effect + rng.normal(0.0, 0.15)
            rows.append({
                "lab_id": f"lab{lab + 1}",
                "es_id": es_id,
                "study": f"Author{lab + 1} ({2000 + lab})",
                "n1": n1,
                "mean1": true_effect + rng.normal(0.0, 1 / np.sqrt(n1)),
                "sd1": sd1,
                "n2": n2,
                "mean2": rng.normal(0.0, 1 / np.sqrt(n2)),
                "sd2": sd2,
                "female_proportion": float(rng.uniform(0.2, 0.8)),
                "measure_type": "verbal" if es_id % 2 else "figural",
                "publication": "journal" if lab < 4 else "thesis",
            })
    return pd.DataFrame(rows)


@pytest.fixture
def smd_table(smd_studies: pd.DataFrame) -> pd.DataFrame:
    """``smd_studies`` with yi and vi columns."""
    return compute_effect_sizes(smd_studies, measure="SMD")


@pytest.fixture
def zcor_studies() -> pd.DataFrame:
    """Correlations from 6 samples with 2 effect sizes each."""
    rng = np.random.default_rng(7)
    rows = []
    for sample in range(6):
        sample_shift = rng.normal(0.0, 0.1)
        for k in range(2):
            n = int(rng.integers(40, 200))
            z = 0.25 + sample_shift + rng.normal(0.0, 1 / np.sqrt(n - 3))
            rows.append({
                "sample_id": f"s{sample + 1}",
                "es_id": 2 * sample + k + 1,
                "r": float(np.tanh(z)),
                "n": n,
            })
    return pd.DataFrame(rows)


@pytest.fixture
def three_studies() -> pd.DataFrame:
    """Three independent effect sizes with known sampling variances."""
    return pd.DataFrame({
        "es_id": [1, 2, 3],
        "yi": [0.5, 0.3, 0.7],
        "vi": [0.04, 0.09, 0.01],
    })

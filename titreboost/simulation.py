from typing import Callable, Mapping, Optional, Union
import functools
import logging
import time

import numpy as np
import pandas as pd

from .boosting import (
    CrossReactivityMap,
    Number,
    _accumulate,
    _check_buffer,
    antigenic_seniority,
    non_negative,
    strain_indices,
)
from .params import ConfigurationError, FastSimulationParameters, Observation

logger = logging.getLogger(__name__)


def log_time(func: Callable) -> Callable:
    """Timing decorator"""

    @functools.wraps(func)
    def wrapped(*args, **kwargs):
        t0 = time.time()
        logger.log(logging.INFO, msg=f"Calling {func.__name__}")
        result = func(*args, **kwargs)
        t1 = time.time()
        logger.log(logging.INFO, msg=f"{func.__name__} total = {t1-t0:2.1f} s")
        return result

    return wrapped


def sort_infections(
    infection_times: np.ndarray, infection_strain: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """
    Sort infections by the time they occurred. Infections at the same time keep their
    order.
    """
    infection_times = np.asarray(infection_times, dtype=float)
    infection_strain = strain_indices(infection_strain, "infection_strain")
    order = np.argsort(infection_times, kind="stable")
    return infection_times[order], infection_strain[order]


def fast_individual_base(
    predicted_titres: np.ndarray,
    theta: Union[FastSimulationParameters, Mapping],
    infection_times: np.ndarray,
    infection_strain: np.ndarray,
    measurement_strain: np.ndarray,
    sample_times: np.ndarray,
    rows_per_sample: np.ndarray,
    antigenic_map: CrossReactivityMap,
    first_sample: int = 0,
    last_sample: Optional[int] = None,
    start_row: int = 0,
) -> None:
    """
    Simulate the titres of a single individual at each of their blood samples, adding
    them to predicted_titres.

    Blood sample j owns rows_per_sample[j] consecutive rows of measurement_strain and
    predicted_titres. Only infections at or before the time of a sample contribute to
    it. Antigenic seniority is counted in array order, so infections must be sorted by
    time (see sort_infections). Unsorted infections silently get the wrong seniority.

    Args:
        predicted_titres: (n_rows,) Updated in place. Left unchanged if a
            NumericAnomalyError is raised.
        theta: Must contain mu, mu_short, wane and tau.
        infection_times: (n_infections,) Sorted ascending.
        infection_strain: (n_infections,) Antigenic map index of each infecting strain.
        measurement_strain: (n_rows,) Antigenic map index of the strain measured in each
            row.
        sample_times: (n_samples,) Time of each blood sample.
        rows_per_sample: (n_samples,) Number of measurement rows of each blood sample.
        antigenic_map: Cross reactivity between strains.
        first_sample: Index of the first blood sample to simulate.
        last_sample: Index of the last blood sample to simulate (inclusive). Defaults
            to the last blood sample.
        start_row: Row of the first measurement of first_sample.
    """
    params = FastSimulationParameters.coerce(theta)

    infection_times = np.asarray(infection_times, dtype=float)
    infection_strain = strain_indices(infection_strain, "infection_strain")
    if infection_times.ndim != 1 or infection_times.shape != infection_strain.shape:
        raise ConfigurationError(
            "infection_times and infection_strain should be 1D and the same length"
        )

    sample_times = np.asarray(sample_times, dtype=float)
    rows_per_sample = np.asarray(rows_per_sample, dtype=int)
    if sample_times.ndim != 1 or sample_times.shape != rows_per_sample.shape:
        raise ConfigurationError(
            "sample_times and rows_per_sample should be 1D and the same length"
        )
    if (rows_per_sample < 0).any():
        raise ConfigurationError("rows_per_sample must be non-negative")

    measurement_strain = strain_indices(measurement_strain, "measurement_strain")
    if measurement_strain.ndim != 1:
        raise ConfigurationError("measurement_strain should be 1 dimensional")
    _check_buffer(predicted_titres, len(measurement_strain), "predicted_titres")

    last_sample = len(sample_times) - 1 if last_sample is None else last_sample
    if first_sample < 0 or last_sample >= len(sample_times) or (
        len(sample_times) and first_sample > last_sample
    ):
        raise ConfigurationError(
            f"samples {first_sample}-{last_sample} are not a range of "
            f"{len(sample_times)} samples"
        )
    n_rows = rows_per_sample[first_sample : last_sample + 1].sum()
    if start_row < 0 or start_row + n_rows > len(measurement_strain):
        raise ConfigurationError(
            f"samples need rows {start_row}-{start_row + n_rows}, but there are only "
            f"{len(measurement_strain)} measurement rows"
        )

    antigenic_map.check_strains(infection_strain, "infection_strain")
    antigenic_map.check_strains(
        measurement_strain[start_row : start_row + n_rows], "measurement_strain"
    )

    infections = list(zip(infection_times.tolist(), infection_strain.tolist()))

    totals = predicted_titres.copy()
    row = start_row
    for j in range(first_sample, last_sample + 1):
        sample_time = sample_times[j]
        end = row + rows_per_sample[j]
        rows = measurement_strain[row:end]

        n_inf = 1.0
        for infection_time, strain in infections:
            if sample_time >= infection_time:
                wane_amount = non_negative(
                    1.0 - params.wane * (sample_time - infection_time)
                )
                seniority = antigenic_seniority(n_inf, params.tau)
                _accumulate(
                    totals[row:end],
                    seniority
                    * (
                        params.mu * antigenic_map.long_term.column(rows, strain)
                        + params.mu_short
                        * antigenic_map.short_term.column(rows, strain)
                        * wane_amount
                    ),
                )
                n_inf += 1.0

        row = end

    predicted_titres[:] = totals


def _strain_positions(
    strain_isolation_times: np.ndarray, strains: np.ndarray
) -> np.ndarray:
    """
    Antigenic map index of each of strains. If a time appears more than once in
    strain_isolation_times its first position is used.
    """
    positions = pd.Series(
        np.arange(len(strain_isolation_times)), index=strain_isolation_times
    )
    positions = positions[~positions.index.duplicated()].reindex(strains)
    if positions.isna().any():
        missing = list(positions.index[positions.isna()])
        raise ConfigurationError(f"strains not in strain_isolation_times: {missing}")
    return positions.values.astype(int)


@log_time
def simulate_individual(
    theta: Union[FastSimulationParameters, Mapping],
    infection_history: np.ndarray,
    antigenic_map: CrossReactivityMap,
    sampling_times: Union[Number, np.ndarray],
    strain_isolation_times: np.ndarray,
    measured_strains: np.ndarray,
    repeats: int = 1,
    observation: Optional[Union[Observation, Mapping]] = None,
    measurement_bias: Optional[np.ndarray] = None,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """
    Simulate titres against measured_strains at each of sampling_times for an
    individual with a known infection history.

    Args:
        theta: Must contain mu, mu_short, wane and tau.
        infection_history: (number_strains,) 1 where the individual was infected by a
            strain, otherwise 0.
        antigenic_map: Cross reactivity between strains.
        sampling_times: Times blood samples were taken.
        strain_isolation_times: (number_strains,) Circulation time of each strain in
            the antigenic map. Infections happen at these times.
        measured_strains: Circulation times of the strains measured in every blood
            sample.
        repeats: Number of repeat observations of every titre.
        observation: Observation noise parameters. If None, true titres are returned.
        measurement_bias: (len(measured_strains),) Shift in the observed titres of each
            measured strain. Strains share no bias groups, every measured strain has
            its own entry. Only used with observation.
        rng: Random number generator used for observation noise.

    Returns:
        DataFrame with columns samples, virus, titre and run. One row per sampling
        time, measured strain and repeat.
    """
    if repeats < 1:
        raise ValueError("repeats must be at least 1")

    strain_isolation_times = np.asarray(strain_isolation_times, dtype=float)
    infection_history = np.asarray(infection_history)
    if infection_history.shape != strain_isolation_times.shape:
        raise ConfigurationError(
            "infection_history and strain_isolation_times are different shapes"
        )
    if len(strain_isolation_times) != antigenic_map.number_strains:
        raise ConfigurationError(
            "strain_isolation_times should have an entry for each antigenic map strain"
        )

    infected = np.flatnonzero(infection_history)
    infection_times, infection_strain = sort_infections(
        strain_isolation_times[infected], infected
    )

    sampling_times = np.atleast_1d(np.asarray(sampling_times, dtype=float))
    measured_strains = np.atleast_1d(np.asarray(measured_strains, dtype=float))
    n_samps = len(sampling_times)
    rows_per_sample = np.full(n_samps, len(measured_strains))
    measurement_strain = np.tile(
        _strain_positions(strain_isolation_times, measured_strains), n_samps
    )

    titres = np.zeros(len(measurement_strain))
    fast_individual_base(
        titres,
        theta,
        infection_times,
        infection_strain,
        measurement_strain,
        sampling_times,
        rows_per_sample,
        antigenic_map,
    )

    titres = np.tile(titres, repeats)

    if observation is not None:
        if not isinstance(observation, Observation):
            observation = Observation.from_theta(observation)
        if measurement_bias is not None:
            measurement_bias = np.asarray(measurement_bias, dtype=float)
            if measurement_bias.shape != measured_strains.shape:
                raise ConfigurationError(
                    "measurement_bias should have an entry for each measured strain"
                )
            measurement_bias = np.tile(measurement_bias, n_samps * repeats)
        titres = observation.add_noise(
            titres, rng=rng, measurement_bias=measurement_bias
        )

    return pd.DataFrame(
        dict(
            samples=np.tile(np.repeat(sampling_times, rows_per_sample), repeats),
            virus=np.tile(measured_strains, n_samps * repeats),
            titre=titres,
            run=np.repeat(np.arange(1, repeats + 1), len(measurement_strain)),
        )
    )

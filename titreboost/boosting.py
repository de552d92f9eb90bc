from dataclasses import dataclass
from typing import Mapping, Optional, Union
import logging

import numpy as np

from .params import (
    BaseBoosting,
    BaseParameters,
    BoostingVariant,
    ConfigurationError,
    NumericAnomalyError,
    StrainDependentBoosting,
    StrainDependentParameters,
    TitreDependentBoosting,
    TitreDependentParameters,
    boosting_variant,
)

logger = logging.getLogger(__name__)

Number = Union[float, int]


def non_negative(x):
    """
    Floor x at zero. Works on scalars and arrays. NaN is floored to zero as well.
    """
    if np.ndim(x) == 0:
        return x if x > 0.0 else 0.0
    return np.where(x > 0.0, x, 0.0)


def antigenic_seniority(n_infections, tau: Number):
    """
    Seniority discount of the n-th infection an individual has had.

    Args:
        n_infections: Number of infections up to and including this one (scalar or
            array).
        tau: Reduction in boosting per previous infection.
    """
    return non_negative(1.0 - tau * (n_infections - 1.0))


def titre_dependent_scale(
    titre: Number, gradient: Number, boost_limit: Number
) -> float:
    """
    Multiplier applied to a boost given the titre present when the infection occurred.
    Above boost_limit suppression saturates.
    """
    if titre >= boost_limit:
        return 1.0 - gradient * boost_limit
    return 1.0 - gradient * titre


def strain_indices(values: np.ndarray, name: str) -> np.ndarray:
    """
    Strain indexes as an int array. Non-integer values (e.g. 0.5) are rejected rather
    than truncated.
    """
    values = np.asarray(values)
    if values.size and not np.issubdtype(values.dtype, np.integer):
        raise ConfigurationError(f"{name} must contain integer strain indexes")
    return values.astype(int)


class StrainMatrix:
    """
    A square matrix over antigenic map strains, stored flat in row major order, i.e.
    element [m, s] lives at values[m * number_strains + s]. m indexes the measured
    strain and s the infecting strain.
    """

    def __init__(self, values: np.ndarray, number_strains: int, name: str = "matrix"):
        values = np.asarray(values, dtype=float)
        if values.size != number_strains**2:
            raise ConfigurationError(
                f"{name} has {values.size} entries, expected {number_strains}^2"
            )
        if not np.isfinite(values).all() or (values < 0).any():
            raise ConfigurationError(f"{name} must be finite and non-negative")
        self.name = name
        self.number_strains = number_strains
        self.values = values.reshape(number_strains, number_strains)

    def __repr__(self) -> str:
        return f"StrainMatrix(name={self.name}, number_strains={self.number_strains})"

    def check_indices(self, indices: np.ndarray, name: str) -> None:
        """Raise a ConfigurationError if any strain index is outside the matrix."""
        indices = np.asarray(indices)
        if indices.size and (indices.min() < 0 or indices.max() >= self.number_strains):
            raise ConfigurationError(
                f"{name} contains strain indexes outside [0, {self.number_strains})"
            )

    def get(self, row: int, col: int) -> float:
        if not (0 <= row < self.number_strains and 0 <= col < self.number_strains):
            raise ConfigurationError(
                f"({row}, {col}) outside {self.name} of {self.number_strains} strains"
            )
        return self.values[row, col]

    def column(self, rows: np.ndarray, col: int) -> np.ndarray:
        """
        Values of many measured strains against a single infecting strain. rows must
        already have been passed through check_indices.
        """
        return self.values[rows, col]


class CrossReactivityMap:
    """
    Long and short term antigenic cross reactivity between every pair of strains.

    Args:
        long_term: (number_strains ** 2,) flattened long term cross reactivity.
        short_term: (number_strains ** 2,) flattened short term cross reactivity.
        number_strains: Number of strains in the antigenic map.
    """

    def __init__(
        self, long_term: np.ndarray, short_term: np.ndarray, number_strains: int
    ):
        if number_strains < 1:
            raise ConfigurationError("number_strains must be at least 1")
        self.number_strains = int(number_strains)
        self.long_term = StrainMatrix(long_term, self.number_strains, "long_term")
        self.short_term = StrainMatrix(short_term, self.number_strains, "short_term")

    def __repr__(self) -> str:
        return f"CrossReactivityMap(number_strains={self.number_strains})"

    def check_strains(self, strains: np.ndarray, name: str) -> None:
        self.long_term.check_indices(strains, name)


@dataclass
class InfectionHistory:
    """
    The infection history of a single individual. Each element of the arrays is an
    infection slot.

    Args:
        cumulative_infections: Number of infections up to and including each slot.
        active: Did an infection occur in this slot? Slots with a value > 0 are active.
            Inactive slots (including negative and NaN values) are ignored.
        infection_strain: Antigenic map index of the strain causing each infection.
        infection_times: Time of each slot. Only needed for titre dependent boosting
            and for computing waning.

    Attributes:
        n_slots: Number of infection slots.
    """

    cumulative_infections: np.ndarray
    active: np.ndarray
    infection_strain: np.ndarray
    infection_times: Optional[np.ndarray] = None

    def __post_init__(self):
        self.cumulative_infections = np.asarray(self.cumulative_infections)
        self.active = np.asarray(self.active) > 0
        self.infection_strain = strain_indices(
            self.infection_strain, "infection_strain"
        )
        arrays = dict(
            cumulative_infections=self.cumulative_infections,
            active=self.active,
            infection_strain=self.infection_strain,
        )
        if self.infection_times is not None:
            self.infection_times = np.asarray(self.infection_times, dtype=float)
            arrays["infection_times"] = self.infection_times

        for name, arr in arrays.items():
            if arr.ndim != 1:
                raise ConfigurationError(f"{name} should be 1 dimensional")

        if len({len(arr) for arr in arrays.values()}) > 1:
            lengths = ", ".join(f"{name}={len(arr)}" for name, arr in arrays.items())
            raise ConfigurationError(
                f"infection history arrays differ in length: {lengths}"
            )

        self.n_slots = len(self.active)

    def require_times(self) -> np.ndarray:
        if self.infection_times is None:
            raise ConfigurationError("infection_times are required")
        return self.infection_times


def waning_and_seniority(
    sample_time: Number, history: InfectionHistory, wane: Number, tau: Number
) -> tuple[np.ndarray, np.ndarray]:
    """
    Precompute the waning and seniority vectors used by base_boost for a sample taken
    at sample_time. Inactive infections and infections after the sample get 0 in both.

    Returns:
        (waning, seniority), both (n_slots,).
    """
    times = history.require_times()
    counts = np.asarray(history.cumulative_infections, dtype=float)
    relevant = history.active & (times <= sample_time)
    waning = np.where(relevant, non_negative(1.0 - wane * (sample_time - times)), 0.0)
    seniority = np.where(relevant, antigenic_seniority(counts, tau), 0.0)
    return waning, seniority


def _check_buffer(buffer: np.ndarray, length: int, name: str) -> None:
    if not isinstance(buffer, np.ndarray) or not np.issubdtype(
        buffer.dtype, np.floating
    ):
        raise ConfigurationError(f"{name} must be a floating point numpy array")
    if buffer.shape != (length,):
        raise ConfigurationError(f"{name} should have shape ({length},)")


def _check_vector(values: np.ndarray, length: int, name: str) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    if values.shape != (length,):
        raise ConfigurationError(f"{name} should have shape ({length},)")
    if not np.isfinite(values).all() or (values < 0).any():
        raise ConfigurationError(f"{name} must be finite and non-negative")
    return values


def _check_samples(
    predicted_titres: np.ndarray,
    sample_strain: np.ndarray,
    history: InfectionHistory,
    antigenic_map: CrossReactivityMap,
) -> np.ndarray:
    sample_strain = strain_indices(sample_strain, "sample_strain")
    if sample_strain.ndim != 1:
        raise ConfigurationError("sample_strain should be 1 dimensional")
    _check_buffer(predicted_titres, len(sample_strain), "predicted_titres")
    antigenic_map.check_strains(sample_strain, "sample_strain")
    antigenic_map.check_strains(history.infection_strain, "infection_strain")
    return sample_strain


def _accumulate(predicted_titres: np.ndarray, contribution: np.ndarray) -> None:
    """
    Add the contribution of a single infection to predicted_titres. Kernels call this
    on a working copy of the caller's buffer, so the buffer is left untouched if a
    contribution is rejected.
    """
    if not (np.isfinite(contribution).all() and (contribution >= 0.0).all()):
        raise NumericAnomalyError(
            f"infection contribution is negative or non-finite: {contribution}"
        )
    predicted_titres += contribution


def base_boost(
    predicted_titres: np.ndarray,
    theta: Union[BaseParameters, Mapping],
    history: InfectionHistory,
    sample_strain: np.ndarray,
    antigenic_map: CrossReactivityMap,
    waning: np.ndarray,
    seniority: np.ndarray,
) -> None:
    """
    Add the titres generated by each active infection to predicted_titres.

    Every active infection contributes to every sample. Infections that happened after
    a sample should have been given zero waning and seniority by the caller (see
    waning_and_seniority).

    Args:
        predicted_titres: (n_samples,) Updated in place. Left unchanged if a
            NumericAnomalyError is raised.
        theta: Must contain mu and mu_short.
        history: Infection history.
        sample_strain: (n_samples,) Antigenic map index of the strain measured in each
            sample.
        antigenic_map: Cross reactivity between strains.
        waning: (n_slots,) Waning of the short term response of each infection.
        seniority: (n_slots,) Antigenic seniority of each infection.
    """
    params = BaseParameters.coerce(theta)
    sample_strain = _check_samples(
        predicted_titres, sample_strain, history, antigenic_map
    )
    waning = _check_vector(waning, history.n_slots, "waning")
    seniority = _check_vector(seniority, history.n_slots, "seniority")

    totals = predicted_titres.copy()
    for i in np.flatnonzero(history.active):
        strain = history.infection_strain[i]
        _accumulate(
            totals,
            seniority[i]
            * (
                params.mu * antigenic_map.long_term.column(sample_strain, strain)
                + params.mu_short
                * antigenic_map.short_term.column(sample_strain, strain)
                * waning[i]
            ),
        )
    predicted_titres[:] = totals


def strain_dependent_boost(
    predicted_titres: np.ndarray,
    theta: Union[StrainDependentParameters, Mapping],
    history: InfectionHistory,
    sample_strain: np.ndarray,
    antigenic_map: CrossReactivityMap,
    waning: np.ndarray,
    strain_groups: Union[StrainDependentBoosting, Mapping],
) -> None:
    """
    Like base_boost, but the long term boost of an infection is taken from the boosting
    group of the infecting strain, and antigenic seniority is computed from
    cumulative_infections using tau.

    Args:
        theta: Must contain mu_short and tau.
        strain_groups: Long term boost of each group and the group of each strain.
    """
    params = StrainDependentParameters.coerce(theta)
    if strain_groups is None:
        raise ConfigurationError("strain dependent boosting requires strain_groups")
    if not isinstance(strain_groups, StrainDependentBoosting):
        strain_groups = StrainDependentBoosting.from_mapping(strain_groups)

    sample_strain = _check_samples(
        predicted_titres, sample_strain, history, antigenic_map
    )
    waning = _check_vector(waning, history.n_slots, "waning")

    if history.infection_strain.size and history.infection_strain.max() >= len(
        strain_groups.strain_to_group
    ):
        raise ConfigurationError("strain_to_group has no entry for an infecting strain")

    totals = predicted_titres.copy()
    for i in np.flatnonzero(history.active):
        strain = history.infection_strain[i]
        mu = strain_groups.group_boost[strain_groups.strain_to_group[strain]]
        _accumulate(
            totals,
            antigenic_seniority(history.cumulative_infections[i], params.tau)
            * (
                mu * antigenic_map.long_term.column(sample_strain, strain)
                + params.mu_short
                * antigenic_map.short_term.column(sample_strain, strain)
                * waning[i]
            ),
        )
    predicted_titres[:] = totals


def reconstruct_monitored_titres(
    monitored_titres: np.ndarray,
    params: TitreDependentParameters,
    history: InfectionHistory,
    antigenic_map: CrossReactivityMap,
) -> None:
    """
    Reconstruct the titre against each infecting strain at the time of each infection,
    overwriting monitored_titres in place.

    Slots are visited in increasing order because the titre at slot i depends on the
    monitored titres of all earlier slots. The running total is not reset between
    slots. Slot 0 has no earlier infections and keeps whatever value the caller gave it.
    """
    times = history.require_times().tolist()
    active = history.active.tolist()
    strains = history.infection_strain.tolist()
    counts = history.cumulative_infections.tolist()

    monitored_titre = 0.0
    for i in range(history.n_slots):
        if not active[i]:
            continue
        for ii in range(i - 1, -1, -1):
            if active[ii]:
                senior = antigenic_seniority(counts[ii], params.tau)
                long_boost = senior * (
                    params.mu * antigenic_map.long_term.get(strains[i], strains[ii])
                )
                short_boost = senior * (
                    params.mu_short
                    * antigenic_map.short_term.get(strains[i], strains[ii])
                )
                scale = titre_dependent_scale(
                    monitored_titres[ii], params.gradient, params.boost_limit
                )
                long_boost = non_negative(long_boost * scale)
                short_boost = non_negative(short_boost * scale)
                monitored_titre += long_boost + short_boost * non_negative(
                    1.0 - params.wane * (times[i] - times[ii])
                )
            monitored_titres[i] = monitored_titre


def titre_dependent_boost(
    predicted_titres: np.ndarray,
    monitored_titres: np.ndarray,
    theta: Union[TitreDependentParameters, Mapping],
    history: InfectionHistory,
    sample_strain: np.ndarray,
    antigenic_map: CrossReactivityMap,
    waning: np.ndarray,
) -> None:
    """
    Boosting that is suppressed by the titre already present at the time of infection.

    First the titre at the time of every infection is reconstructed into
    monitored_titres (see reconstruct_monitored_titres). Then each active infection
    adds its boost to predicted_titres, scaled by (1 - gradient * titre), where titre is
    its monitored titre capped at boost_limit.

    Args:
        predicted_titres: (n_samples,) Updated in place.
        monitored_titres: (n_slots,) Overwritten for every active slot after the first.
        theta: Must contain mu, mu_short, tau, gradient, boost_limit and wane.
        history: Infection history, including infection_times.
        sample_strain: (n_samples,) Antigenic map index of each measured strain.
        antigenic_map: Cross reactivity between strains.
        waning: (n_slots,) Waning of the short term response of each infection.
    """
    params = TitreDependentParameters.coerce(theta)
    history.require_times()
    sample_strain = _check_samples(
        predicted_titres, sample_strain, history, antigenic_map
    )
    _check_buffer(monitored_titres, history.n_slots, "monitored_titres")
    waning = _check_vector(waning, history.n_slots, "waning")

    reconstruct_monitored_titres(monitored_titres, params, history, antigenic_map)

    totals = predicted_titres.copy()
    for i in np.flatnonzero(history.active):
        strain = history.infection_strain[i]
        senior = antigenic_seniority(history.cumulative_infections[i], params.tau)
        scale = titre_dependent_scale(
            monitored_titres[i], params.gradient, params.boost_limit
        )
        long_boost = senior * (
            params.mu * antigenic_map.long_term.column(sample_strain, strain)
        )
        short_boost = senior * (
            params.mu_short * antigenic_map.short_term.column(sample_strain, strain)
        )
        long_boost = non_negative(long_boost * scale)
        short_boost = non_negative(short_boost * scale)
        _accumulate(totals, long_boost + short_boost * waning[i])
    predicted_titres[:] = totals


def accumulate_boost(
    variant: BoostingVariant,
    predicted_titres: np.ndarray,
    monitored_titres: Optional[np.ndarray],
    theta: Mapping,
    history: InfectionHistory,
    sample_strain: np.ndarray,
    antigenic_map: CrossReactivityMap,
    waning: np.ndarray,
    seniority: np.ndarray,
) -> None:
    """
    Run the boosting model that corresponds to variant. See base_boost,
    strain_dependent_boost and titre_dependent_boost.
    """
    logger.debug("accumulating boost with %s", type(variant).__name__)

    if isinstance(variant, TitreDependentBoosting):
        if monitored_titres is None:
            raise ConfigurationError(
                "titre dependent boosting requires monitored_titres"
            )
        titre_dependent_boost(
            predicted_titres,
            monitored_titres,
            theta,
            history,
            sample_strain,
            antigenic_map,
            waning,
        )
    elif isinstance(variant, StrainDependentBoosting):
        strain_dependent_boost(
            predicted_titres,
            theta,
            history,
            sample_strain,
            antigenic_map,
            waning,
            variant,
        )
    elif isinstance(variant, BaseBoosting):
        base_boost(
            predicted_titres,
            theta,
            history,
            sample_strain,
            antigenic_map,
            waning,
            seniority,
        )
    else:
        raise TypeError(f"unknown boosting variant: {variant!r}")


def add_multiple_infections_boost(
    predicted_titres: np.ndarray,
    monitored_titres: Optional[np.ndarray],
    theta: Mapping,
    history: InfectionHistory,
    sample_strain: np.ndarray,
    antigenic_map: CrossReactivityMap,
    waning: np.ndarray,
    seniority: np.ndarray,
    titre_dependent_boosting: bool = False,
    dob: Optional[Number] = None,
    strain_groups: Optional[Union[StrainDependentBoosting, Mapping]] = None,
) -> None:
    """
    Add the boosting from an individual's infections to predicted_titres.

    If titre_dependent_boosting is set titre dependent boosting is used, otherwise if
    strain_groups is passed (even if it is empty) strain dependent boosting is used,
    otherwise base boosting.

    Args:
        dob: Date of birth. Accepted but not used by any of the boosting models.
        strain_groups: Mapping with 'group_boost' and 'strain_to_group' entries.

    See accumulate_boost for the remaining arguments.
    """
    accumulate_boost(
        boosting_variant(titre_dependent_boosting, strain_groups),
        predicted_titres,
        monitored_titres,
        theta,
        history,
        sample_strain,
        antigenic_map,
        waning,
        seniority,
    )

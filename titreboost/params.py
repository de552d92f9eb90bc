from typing import Mapping, Optional, Union

import numpy as np
from pydantic import (
    BaseModel,
    ConfigDict,
    FiniteFloat,
    NonNegativeFloat,
    PositiveFloat,
    ValidationError,
    field_validator,
    model_validator,
)


class ConfigurationError(ValueError):
    """
    Raised when a caller supplies arguments that break the contract of a kernel: a
    missing parameter, an out of range strain index, arrays of mismatched length etc.
    """


class NumericAnomalyError(ArithmeticError):
    """
    Raised when a computed titre contribution is negative or non-finite after all
    floors have been applied.
    """


def get_or_fail(theta: Mapping, key: str) -> float:
    """
    Look up a parameter by name.

    Args:
        theta: String keyed mapping of parameter values (dict, pd.Series, ...).
        key: Name of the parameter.
    """
    try:
        return theta[key]
    except KeyError:
        raise ConfigurationError(f"theta is missing required parameter '{key}'")


def _scalar(value):
    """numpy scalars (e.g. from a pd.Series) to plain python numbers."""
    return value.item() if isinstance(value, np.generic) else value


class BaseModelNoExtra(BaseModel):
    """Pydantic class that prevents additional fields being passed."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)


class KernelParameters(BaseModelNoExtra):
    """
    Base class for the parameter records used by the boosting kernels. Subclasses
    declare the fields they need, and from_theta pulls exactly those out of a named
    parameter vector.
    """

    @classmethod
    def from_theta(cls, theta: Mapping) -> "KernelParameters":
        values = {
            name: _scalar(get_or_fail(theta, name)) for name in cls.model_fields
        }
        try:
            return cls(**values)
        except ValidationError as err:
            raise ConfigurationError(str(err)) from err

    @classmethod
    def coerce(cls, theta: Union["KernelParameters", Mapping]) -> "KernelParameters":
        """Pass an instance of cls straight through, otherwise build one from theta."""
        return theta if isinstance(theta, cls) else cls.from_theta(theta)


class BaseParameters(KernelParameters):
    """
    mu: Long term boost.
    mu_short: Short term boost.
    """

    mu: NonNegativeFloat
    mu_short: NonNegativeFloat


class StrainDependentParameters(KernelParameters):
    """
    The long term boost comes from the strain groups, so isn't needed here.

    mu_short: Short term boost.
    tau: Antigenic seniority. Each previous infection reduces boosting by this much.
    """

    mu_short: NonNegativeFloat
    tau: FiniteFloat


class TitreDependentParameters(KernelParameters):
    """
    mu: Long term boost.
    mu_short: Short term boost.
    tau: Antigenic seniority.
    gradient: Reduction in boosting per unit of titre already present.
    boost_limit: Titre above which boosting is no longer reduced any further.
    wane: Linear waning rate of the short term boost.
    """

    mu: NonNegativeFloat
    mu_short: NonNegativeFloat
    tau: FiniteFloat
    gradient: FiniteFloat
    boost_limit: FiniteFloat
    wane: FiniteFloat


class FastSimulationParameters(KernelParameters):
    mu: NonNegativeFloat
    mu_short: NonNegativeFloat
    wane: FiniteFloat
    tau: FiniteFloat


class BaseBoosting(BaseModelNoExtra):
    """Constant boosting with a precomputed seniority for each infection."""


class TitreDependentBoosting(BaseModelNoExtra):
    """Boosting suppressed by the titre present at the time of infection."""


class StrainDependentBoosting(BaseModelNoExtra):
    """
    Long term boosting that depends on which boosting group a strain belongs to.

    Args:
        group_boost: (n_groups,) Long term boost of each group.
        strain_to_group: (number_strains,) The group index of each strain in the
            antigenic map.
    """

    group_boost: np.ndarray
    strain_to_group: np.ndarray

    @field_validator("group_boost", mode="before")
    @classmethod
    def group_boost_non_negative(cls, value):
        value = np.asarray(value, dtype=float)
        if value.ndim != 1:
            raise ValueError("group_boost should be 1 dimensional")
        if not np.isfinite(value).all() or (value < 0).any():
            raise ValueError("group_boost must be finite and non-negative")
        return value

    @field_validator("strain_to_group", mode="before")
    @classmethod
    def strain_to_group_integer(cls, value):
        value = np.asarray(value)
        if value.ndim != 1:
            raise ValueError("strain_to_group should be 1 dimensional")
        if value.size and not np.issubdtype(value.dtype, np.integer):
            raise ValueError("strain_to_group must contain integers")
        return value.astype(int)

    @model_validator(mode="after")
    def groups_in_range(self):
        if self.strain_to_group.size and (
            self.strain_to_group.min() < 0
            or self.strain_to_group.max() >= len(self.group_boost)
        ):
            raise ValueError("strain_to_group contains an index outside group_boost")
        return self

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "StrainDependentBoosting":
        """
        Build from a mapping with 'group_boost' and 'strain_to_group' entries.
        """
        try:
            return cls(
                group_boost=get_or_fail(mapping, "group_boost"),
                strain_to_group=get_or_fail(mapping, "strain_to_group"),
            )
        except ValidationError as err:
            raise ConfigurationError(str(err)) from err


BoostingVariant = Union[BaseBoosting, StrainDependentBoosting, TitreDependentBoosting]


def boosting_variant(
    titre_dependent_boosting: bool,
    strain_groups: Optional[Union[Mapping, StrainDependentBoosting]] = None,
) -> BoostingVariant:
    """
    Choose a boosting variant from a titre dependent boosting flag and an optional
    strain group mapping. The flag takes precedence over the mapping.
    """
    if titre_dependent_boosting:
        return TitreDependentBoosting()
    elif strain_groups is None:
        return BaseBoosting()
    elif isinstance(strain_groups, StrainDependentBoosting):
        return strain_groups
    else:
        return StrainDependentBoosting.from_mapping(strain_groups)


class Observation(BaseModelNoExtra):
    """
    Parameters of the observation process.

    Args:
        error: Standard deviation of the measurement error.
        max_titre: Highest titre that can be observed.
    """

    error: PositiveFloat = 1.0
    max_titre: NonNegativeFloat = 8.0

    @classmethod
    def from_theta(cls, theta: Mapping) -> "Observation":
        try:
            return cls(
                error=_scalar(get_or_fail(theta, "error")),
                max_titre=_scalar(get_or_fail(theta, "MAX_TITRE")),
            )
        except ValidationError as err:
            raise ConfigurationError(str(err)) from err

    def add_noise(
        self,
        titres: np.ndarray,
        rng: Optional[np.random.Generator] = None,
        measurement_bias: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Simulate observed titres. Observations are normally distributed around the
        (possibly biased) titre, rounded down and truncated to [0, max_titre].

        Args:
            titres: True titres.
            rng: Random number generator.
            measurement_bias: Optional shift added to each titre before noise.
        """
        rng = np.random.default_rng() if rng is None else rng
        mean = np.asarray(titres, dtype=float)
        if measurement_bias is not None:
            measurement_bias = np.asarray(measurement_bias, dtype=float)
            if measurement_bias.shape != mean.shape:
                raise ConfigurationError(
                    "measurement_bias and titres are different shapes"
                )
            mean = mean + measurement_bias
        noisy = np.floor(rng.normal(loc=mean, scale=self.error))
        return np.clip(noisy, 0.0, self.max_titre)

from .params import (
    BaseBoosting,
    BaseParameters,
    boosting_variant,
    ConfigurationError,
    FastSimulationParameters,
    get_or_fail,
    NumericAnomalyError,
    Observation,
    StrainDependentBoosting,
    StrainDependentParameters,
    TitreDependentBoosting,
    TitreDependentParameters,
)
from .boosting import (
    accumulate_boost,
    add_multiple_infections_boost,
    antigenic_seniority,
    base_boost,
    CrossReactivityMap,
    InfectionHistory,
    non_negative,
    reconstruct_monitored_titres,
    strain_dependent_boost,
    StrainMatrix,
    titre_dependent_boost,
    titre_dependent_scale,
    waning_and_seniority,
)
from .simulation import fast_individual_base, simulate_individual, sort_infections
from . import boosting
from . import params
from . import plotting
from . import simulation

__version__ = "0.1.0"
__all__ = [
    "accumulate_boost",
    "add_multiple_infections_boost",
    "antigenic_seniority",
    "base_boost",
    "BaseBoosting",
    "BaseParameters",
    "boosting",
    "boosting_variant",
    "ConfigurationError",
    "CrossReactivityMap",
    "fast_individual_base",
    "FastSimulationParameters",
    "get_or_fail",
    "InfectionHistory",
    "non_negative",
    "NumericAnomalyError",
    "Observation",
    "params",
    "plotting",
    "reconstruct_monitored_titres",
    "simulate_individual",
    "simulation",
    "sort_infections",
    "strain_dependent_boost",
    "StrainDependentBoosting",
    "StrainDependentParameters",
    "StrainMatrix",
    "titre_dependent_boost",
    "titre_dependent_scale",
    "TitreDependentBoosting",
    "TitreDependentParameters",
    "waning_and_seniority",
]

"""
Parameter records for the germline (pedigree / multi-sample) and somatic callers.

Parameters can be loaded from / saved to JSON. Keys may be given either in snake_case (the attribute names) or in the
PascalCase spelling used by older parameter files (e.g. "MaximumCopyNumber"); matching ignores case and underscores.
"""
import json
import dataclasses
from enum import Enum
from typing import Optional, Dict, Any, Type, TypeVar, Mapping, Text


ParametersT = TypeVar("ParametersT")


class ClusteringMode(Enum):
    GaussianMixture = "gaussian_mixture"
    Density = "density"

    def __str__(self):
        return self.value


@dataclasses.dataclass
class CallerParameters:
    maximum_copy_number: int = 5  # number of copy-number states, i.e. calls are in 0..maximum_copy_number - 1
    max_allele_number: int = 3  # largest number of distinct copy numbers per segment in multi-sample mode
    default_allele_count_threshold: int = 4
    default_allele_density_threshold: float = 1000.0
    default_per_segment_allele_max_counts: int = 100
    max_num_offspring_genotypes: int = 500
    minimum_call_size: int = 1000
    de_novo_rate: float = 1e-5
    max_qscore: float = 60.0
    quality_filter_threshold: float = 20.0
    de_novo_quality_filter_threshold: float = 20.0
    median_coverage_threshold: float = 4.0
    max_merge_gap: int = 10000
    use_all_cn_likelihood_gates: bool = False
    random_seed: Optional[int] = None

    def __post_init__(self):
        if self.maximum_copy_number < 3:
            raise ValueError(f"maximum_copy_number must be at least 3 (diploid state must be callable), "
                             f"got {self.maximum_copy_number}")
        if self.max_allele_number < 1:
            raise ValueError(f"max_allele_number must be positive, got {self.max_allele_number}")
        if self.max_num_offspring_genotypes < 1:
            raise ValueError(f"max_num_offspring_genotypes must be positive, got {self.max_num_offspring_genotypes}")


@dataclasses.dataclass
class SomaticCallerParameters:
    maximum_copy_number: int = 10
    minimum_variant_frequencies_for_informative_segment: int = 50
    minimum_call_size: int = 50000
    quality_filter_threshold: float = 10.0
    maximum_related_models: int = 5
    # model search
    deviation_factor: float = 1.2
    deviation_index_cutoff: int = 20
    min_allowed_ploidy: float = 1.5
    max_allowed_ploidy: float = 5.0
    lower_coverage_level_weighting_factor: float = 2.0
    upper_coverage_level_weighting_factor: float = 1.5
    coverage_level_weighting_factor_levels: int = 25
    # coverage / MAF scale reconciliation
    coverage_weighting: float = 0.4
    coverage_weighting_with_maf_segmentation: float = 0.2
    evenness_score_threshold: float = 94.0
    min_evenness_score: float = 86.0
    # model scoring
    percent_normal_2_weighting_factor: float = 0.3
    cn2_weighting_factor: float = 0.35
    deviation_score_weighting_factor: float = 0.25
    diploid_distance_score_weighting_factor: float = 0.25
    heterogeneity_score_weighting_factor: float = 0.2
    precision_weighting_factor: float = 0.5
    heterogeneous_clusters_cutoff: int = 2
    distance_ratio: float = 0.9
    # clustering
    clustering_mode: ClusteringMode = ClusteringMode.Density
    lower_centroid_cutoff: float = 0.05
    upper_centroid_cutoff: float = 0.3
    centroid_cutoff_step: int = 10
    default_centroid_cutoff: float = 0.1
    max_cluster_number: int = 7
    clustering_ram_threshold: float = 8e9
    # clonality logistic regression
    clonality_intercept: float = 2.0
    clonality_best_model_distance: float = -8.0
    clonality_cluster_entropy: float = -1.0
    clonality_cluster_median_distance: float = -5.0
    clonality_cluster_mean_distance: float = -5.0
    clonality_cluster_variance: float = -5.0
    clonality_num_clusters: float = 0.05
    clonality_model_deviation: float = -5.0
    # segment q-score logistic regression over log bin count and best / runner-up model distance ratio
    qscore_intercept: float = 1.0
    qscore_log_bin_count: float = 1.0
    qscore_distance_ratio: float = -3.0
    max_qscore: float = 60.0
    max_merge_gap: int = 10000
    # run modes
    is_enrichment: bool = False
    is_training_mode: bool = False
    user_ploidy: Optional[float] = None
    user_purity: Optional[float] = None
    random_seed: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.clustering_mode, str):
            self.clustering_mode = ClusteringMode(self.clustering_mode)
        if self.min_allowed_ploidy >= self.max_allowed_ploidy:
            raise ValueError(f"min_allowed_ploidy ({self.min_allowed_ploidy}) must be less than max_allowed_ploidy "
                             f"({self.max_allowed_ploidy})")
        if self.user_purity is not None and not 0 < self.user_purity <= 1:
            raise ValueError(f"user_purity must be in (0, 1], got {self.user_purity}")
        if self.user_ploidy is not None and self.user_ploidy <= 0:
            raise ValueError(f"user_ploidy must be positive, got {self.user_ploidy}")


def _normalize_key(key: Text) -> Text:
    return key.replace('_', '').lower()


def parameters_from_dict(
        parameters_class: Type[ParametersT],
        values: Mapping[Text, Any],
        overrides: Optional[Mapping[Text, Any]] = None
) -> ParametersT:
    """
    Build a parameters record from a mapping of (possibly PascalCase) keys to values
    Args:
        parameters_class: Type[ParametersT]
            CallerParameters or SomaticCallerParameters
        values: Mapping[Text, Any]
            Parameter values. Keys that do not correspond to a field raise a ValueError.
        overrides: Optional[Mapping[Text, Any]] (Default=None)
            Values that take precedence over those in values. None values are ignored.
    Returns:
        parameters: ParametersT
            Constructed parameters record
    """
    field_names = {_normalize_key(field.name): field.name for field in dataclasses.fields(parameters_class)}
    kwargs: Dict[Text, Any] = {}
    for key, value in values.items():
        try:
            kwargs[field_names[_normalize_key(key)]] = value
        except KeyError as err:
            raise ValueError(f"Unknown {parameters_class.__name__} option: {key}") from err
    if overrides is not None:
        for key, value in overrides.items():
            if value is None:
                continue
            if _normalize_key(key) not in field_names:
                raise ValueError(f"Unknown {parameters_class.__name__} option: {key}")
            kwargs[field_names[_normalize_key(key)]] = value
    return parameters_class(**kwargs)


def load_parameters(
        parameters_class: Type[ParametersT],
        json_path: Optional[Text] = None,
        overrides: Optional[Mapping[Text, Any]] = None
) -> ParametersT:
    """
    Load parameters from a JSON file, falling back on defaults for values that are not specified
    Args:
        parameters_class: Type[ParametersT]
            CallerParameters or SomaticCallerParameters
        json_path: Optional[Text] (Default=None)
            Path to JSON file holding a single object of parameter values. If None, use defaults.
        overrides: Optional[Mapping[Text, Any]] (Default=None)
            Values that take precedence over those in the file (e.g. from the command line)
    Returns:
        parameters: ParametersT
    """
    values = {}
    if json_path is not None:
        with open(json_path, 'r') as f_in:
            values = json.load(f_in)
        if not isinstance(values, dict):
            raise ValueError(f"Parameter file {json_path} must hold a JSON object")
    return parameters_from_dict(parameters_class, values, overrides=overrides)


def parameters_to_dict(parameters: Any) -> Dict[Text, Any]:
    return {
        key: str(value) if isinstance(value, Enum) else value
        for key, value in dataclasses.asdict(parameters).items()
    }


def save_parameters(parameters: Any, json_path: Text):
    with open(json_path, 'w') as f_out:
        json.dump(parameters_to_dict(parameters), f_out, indent=2)

import os
import json
import pytest

from cnv_caller import config
from cnv_caller.config import CallerParameters, SomaticCallerParameters, ClusteringMode


def test_default_parameters():
    parameters = CallerParameters()
    assert parameters.maximum_copy_number == 5
    assert parameters.minimum_call_size == 1000
    somatic_parameters = SomaticCallerParameters()
    assert somatic_parameters.maximum_copy_number == 10
    assert somatic_parameters.minimum_call_size == 50000
    assert somatic_parameters.clustering_mode == ClusteringMode.Density
    assert somatic_parameters.min_allowed_ploidy < somatic_parameters.max_allowed_ploidy


@pytest.mark.parametrize("parameters_class,kwargs", [
    (CallerParameters, {"maximum_copy_number": 2}),
    (CallerParameters, {"max_allele_number": 0}),
    (CallerParameters, {"max_num_offspring_genotypes": 0}),
    (SomaticCallerParameters, {"min_allowed_ploidy": 5.0, "max_allowed_ploidy": 5.0}),
    (SomaticCallerParameters, {"user_purity": 0.0}),
    (SomaticCallerParameters, {"user_purity": 1.5}),
    (SomaticCallerParameters, {"user_ploidy": -1.0}),
    (SomaticCallerParameters, {"clustering_mode": "kmeans"}),
])
def test_invalid_parameters(parameters_class, kwargs):
    with pytest.raises(ValueError):
        parameters_class(**kwargs)


def test_clustering_mode_from_string():
    parameters = SomaticCallerParameters(clustering_mode="gaussian_mixture")
    assert parameters.clustering_mode == ClusteringMode.GaussianMixture
    assert str(parameters.clustering_mode) == "gaussian_mixture"


def test_parameters_from_dict():
    parameters = config.parameters_from_dict(
        SomaticCallerParameters, {"MaximumCopyNumber": 8, "minimum_call_size": 1000, "IsEnrichment": True},
        overrides={"maximum_copy_number": 6, "user_purity": None}
    )
    assert parameters.maximum_copy_number == 6
    assert parameters.minimum_call_size == 1000
    assert parameters.is_enrichment
    assert parameters.user_purity is None
    with pytest.raises(ValueError):
        config.parameters_from_dict(CallerParameters, {"NotAParameter": 1})
    with pytest.raises(ValueError):
        config.parameters_from_dict(CallerParameters, {}, overrides={"not_a_parameter": 1})


def test_save_and_load_parameters(tmp_path):
    json_path = os.path.join(tmp_path, "parameters.json")
    parameters = SomaticCallerParameters(clustering_mode=ClusteringMode.GaussianMixture, user_ploidy=3.0,
                                         random_seed=7)
    config.save_parameters(parameters, json_path)
    with open(json_path, 'r') as f_in:
        assert json.load(f_in)["clustering_mode"] == "gaussian_mixture"
    assert config.load_parameters(SomaticCallerParameters, json_path) == parameters
    assert config.load_parameters(CallerParameters) == CallerParameters()
    assert config.load_parameters(CallerParameters, overrides={"random_seed": 3}).random_seed == 3


def test_load_parameters_requires_object(tmp_path):
    json_path = os.path.join(tmp_path, "parameters.json")
    with open(json_path, 'w') as f_out:
        json.dump([1, 2, 3], f_out)
    with pytest.raises(ValueError):
        config.load_parameters(CallerParameters, json_path)

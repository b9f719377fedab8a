import numpy
import pytest
from typing import Optional

from cnv_caller.genotype_space import (
    generate_genotype_combinations, generate_parental_genotypes, generate_offspring_genotypes,
    generate_copy_number_combinations
)


class Default:
    num_cn_states = 5
    max_allele_number = 3
    max_num_offspring_genotypes = 500
    random_seed = 0


def test_generate_genotype_combinations(num_cn_states: int = Default.num_cn_states):
    genotypes = generate_genotype_combinations(num_cn_states)
    assert sorted(genotypes.keys()) == list(range(num_cn_states))
    assert genotypes[0] == [(0, 0)]
    assert genotypes[3] == [(0, 3), (1, 2)]
    assert genotypes[4] == [(0, 4), (1, 3), (2, 2)]
    for copy_number, copy_number_genotypes in genotypes.items():
        assert len(copy_number_genotypes) == copy_number // 2 + 1
        assert all(a + b == copy_number and a <= b for a, b in copy_number_genotypes)


def test_generate_parental_genotypes(num_cn_states: int = Default.num_cn_states):
    genotypes = generate_parental_genotypes(num_cn_states)
    assert len(genotypes) == num_cn_states * (num_cn_states + 1) // 2
    assert len(set(genotypes)) == len(genotypes)
    # both phasings of an unbalanced split are present
    assert (1, 2) in genotypes and (2, 1) in genotypes
    assert max(a + b for a, b in genotypes) == num_cn_states - 1


@pytest.mark.parametrize("num_offspring", [0, 1, 2])
def test_generate_offspring_genotypes_enumerates_product(
        num_offspring: int,
        num_cn_states: int = Default.num_cn_states
):
    genotype_set = generate_parental_genotypes(num_cn_states)
    offspring = generate_offspring_genotypes(genotype_set, num_offspring)
    assert len(offspring) == len(genotype_set) ** num_offspring
    assert all(len(genotypes) == num_offspring for genotypes in offspring)
    if num_offspring == 2:
        assert offspring[0] == (genotype_set[0], genotype_set[0])
        assert offspring[1] == (genotype_set[0], genotype_set[1])
        assert offspring[-1] == (genotype_set[-1], genotype_set[-1])


@pytest.mark.parametrize("random_seed", [0, 1, None])
def test_generate_offspring_genotypes_samples_when_capped(
        random_seed: Optional[int],
        num_cn_states: int = Default.num_cn_states,
        max_num: int = Default.max_num_offspring_genotypes
):
    genotype_set = generate_parental_genotypes(num_cn_states)
    num_offspring = 3
    random_state = None if random_seed is None else numpy.random.default_rng(random_seed)
    offspring = generate_offspring_genotypes(genotype_set, num_offspring, max_num=max_num, random_state=random_state)
    assert len(offspring) == max_num
    assert len(set(offspring)) == max_num
    # the sample keeps the order of the full enumeration
    position = {genotype: index for index, genotype in enumerate(genotype_set)}
    keys = [tuple(position[genotype] for genotype in genotypes) for genotypes in offspring]
    assert keys == sorted(keys)


def test_generate_offspring_genotypes_is_reproducible(
        num_cn_states: int = Default.num_cn_states,
        max_num: int = Default.max_num_offspring_genotypes,
        random_seed: int = Default.random_seed
):
    genotype_set = generate_parental_genotypes(num_cn_states)
    offspring1 = generate_offspring_genotypes(genotype_set, 3, max_num=max_num,
                                              random_state=numpy.random.default_rng(random_seed))
    offspring2 = generate_offspring_genotypes(genotype_set, 3, max_num=max_num,
                                              random_state=numpy.random.default_rng(random_seed))
    assert offspring1 == offspring2


def test_generate_offspring_genotypes_rejects_negative_count(num_cn_states: int = Default.num_cn_states):
    with pytest.raises(ValueError):
        generate_offspring_genotypes(generate_parental_genotypes(num_cn_states), -1)


def test_generate_copy_number_combinations(
        num_cn_states: int = Default.num_cn_states,
        max_allele_number: int = Default.max_allele_number
):
    combinations = generate_copy_number_combinations(num_cn_states, max_allele_number)
    # C(5, 1) + C(5, 2) + C(5, 3)
    assert len(combinations) == 5 + 10 + 10
    assert combinations[:num_cn_states] == [(copy_number,) for copy_number in range(num_cn_states)]
    assert (0, 2, 4) in combinations
    assert all(len(set(combination)) == len(combination) for combination in combinations)
    with pytest.raises(ValueError):
        generate_copy_number_combinations(0, max_allele_number)

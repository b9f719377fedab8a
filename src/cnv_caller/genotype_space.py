"""
Enumeration of allelic genotypes: (a, b) splits of a copy number into the number of copies of each allele.
"""
import itertools
import numpy
from typing import Dict, List, Tuple, Sequence, Optional

from cnv_caller.copy_number_model import Genotype


OffspringGenotypes = Tuple[Genotype, ...]


def generate_genotype_combinations(num_cn_states: int) -> Dict[int, List[Genotype]]:
    """
    Map each copy number in [0, num_cn_states) to its unordered genotypes (a, b) with a + b == cn and a <= b,
    i.e. floor(cn / 2) + 1 genotypes per copy number
    """
    return {
        cn: [(a, cn - a) for a in range(cn // 2 + 1)]
        for cn in range(num_cn_states)
    }


def generate_parental_genotypes(num_cn_states: int) -> List[Genotype]:
    """
    Flat list over copy numbers in [0, num_cn_states) of every ordered split (gt, cn - gt). Transmitted alleles are
    ordered by parent, so both phasings are kept.
    """
    return [(gt, cn - gt) for cn in range(num_cn_states) for gt in range(cn + 1)]


def _decode_product_index(flat_index: int, genotype_set: Sequence[Genotype], num_offspring: int) -> OffspringGenotypes:
    digits = []
    for _ in range(num_offspring):
        flat_index, digit = divmod(flat_index, len(genotype_set))
        digits.append(digit)
    return tuple(genotype_set[digit] for digit in reversed(digits))


def generate_offspring_genotypes(
        genotype_set: Sequence[Genotype],
        num_offspring: int,
        max_num: Optional[int] = None,
        random_state: Optional[numpy.random.Generator] = None
) -> List[OffspringGenotypes]:
    """
    Enumerate the genotypes of all offspring jointly
    Args:
        genotype_set: Sequence[Genotype]
            Genotypes available to each offspring
        num_offspring: int
            Number of offspring
        max_num: Optional[int] (Default=None)
            If not None and there are more than max_num tuples, return a uniform sample of exactly max_num distinct
            tuples. The sample keeps the enumeration order of the full product.
        random_state: Optional[numpy.random.Generator] (Default=None)
            Source of randomness for sampling. If None, a freshly seeded generator is used.
    Returns:
        offspring_genotypes: List[OffspringGenotypes]
            Ordered tuples of length num_offspring, in Cartesian-product order
    """
    if num_offspring < 0:
        raise ValueError(f"num_offspring must be non-negative, got {num_offspring}")
    num_tuples = len(genotype_set) ** num_offspring
    if max_num is None or num_tuples <= max_num:
        return list(itertools.product(genotype_set, repeat=num_offspring))
    if random_state is None:
        random_state = numpy.random.default_rng()
    chosen = numpy.sort(random_state.choice(num_tuples, size=max_num, replace=False))
    return [_decode_product_index(int(flat_index), genotype_set, num_offspring) for flat_index in chosen]


def generate_copy_number_combinations(num_cn_states: int, max_allele_number: int) -> List[Tuple[int, ...]]:
    """
    Union of the k-combinations of range(num_cn_states) for k in 1..max_allele_number, i.e. every set of at most
    max_allele_number distinct copy numbers that can segregate at one segment across unrelated samples
    """
    if num_cn_states <= 0:
        raise ValueError(f"num_cn_states must be positive, got {num_cn_states}")
    return [
        combination
        for num_alleles in range(1, max_allele_number + 1)
        for combination in itertools.combinations(range(num_cn_states), num_alleles)
    ]

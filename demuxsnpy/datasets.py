from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd

from scanpy import read_mtx, AnnData
from scipy.sparse import csr_matrix


def read_vartrix(
    matrix: str | Path,
    barcodes: str | Path,
    variants: str | Path,
) -> AnnData:
    """
    Read VarTrix output (a Matrix Market file of SNPs x cells) into an AnnData of cells x SNPs,
    ready for ``demuxsnpy.pp.add_snps``.

    :param matrix: path to the ``.mtx`` file
    :type matrix: str | Path
    :param barcodes: path to the cell barcodes file, one per line
    :type barcodes: str | Path
    :param variants: path to the variants file, one per line
    :type variants: str | Path
    :rtype: AnnData
    """
    adata = read_mtx(matrix).T
    barcodes = pd.read_csv(barcodes, header=None, sep="\t")[0].astype(str)
    variants = pd.read_csv(variants, header=None, sep="\t")[0].astype(str)

    if adata.shape != (len(barcodes), len(variants)):
        raise ValueError(
            f"Matrix of shape {adata.shape[::-1]} doesn't match "
            f"{len(variants)} variants and {len(barcodes)} barcodes"
        )
    adata.obs_names = barcodes.to_numpy()
    adata.var_names = variants.to_numpy()
    return adata


def simulate_multiplexed(
    n_groups: int = 4,
    n_cells: int = 200,
    n_snps: int = 300,
    n_rare_snps: int = 50,
    n_genes: int = 200,
    doublet_rate: float = 0.05,
    negative_rate: float = 0.05,
    weak_rate: float = 0.2,
    hto_signal: float = 200.0,
    hto_background: float = 10.0,
    snp_depth: float = 4.0,
    random_state: int = 0,
) -> tuple[AnnData, pd.DataFrame]:
    """
    Simulate a hashtag multiplexed experiment with genotyped groups.

    Every group has its own random genotype over ``n_snps`` SNPs, ``n_rare_snps``
    more SNPs are almost never covered. Singlets get hashtag signal for their group,
    a ``weak_rate`` share of them get a weakened signal, negatives get background only
    and doublets get signal for two groups and the sum of two SNP profiles.

    :param n_groups: number of groups (hashtags), defaults to 4
    :type n_groups: int, optional
    :param n_cells: number of singlets per group, defaults to 200
    :type n_cells: int, optional
    :return: AnnData with RNA counts in ``X``, hashtag counts in ``obsm["HTO"]``,
        the true group (or "doublet") in ``obs["truth"]``, the hashtag state in ``obs["hto_state"]``;
        and the SNP counts (SNPs x cells)
    :rtype: tuple[AnnData, pd.DataFrame]
    """
    rng = np.random.default_rng(random_state)
    groups = [f"Hashtag{i + 1}" for i in range(n_groups)]

    n_singlets = n_groups * n_cells
    n_doublets = int(round(n_singlets * doublet_rate))
    n_negatives = int(round(n_singlets * negative_rate))
    N = n_singlets + n_doublets + n_negatives

    # [N] group of each cell, second group for doublets
    group_a = np.concatenate(
        [
            np.repeat(np.arange(n_groups), n_cells),
            rng.integers(0, n_groups, n_doublets + n_negatives),
        ]
    )
    group_b = group_a.copy()
    shift = rng.integers(1, n_groups, n_doublets) if n_groups > 1 else 0
    group_b[n_singlets : n_singlets + n_doublets] = (
        group_a[n_singlets : n_singlets + n_doublets] + shift
    ) % n_groups

    state = np.array(
        ["singlet"] * n_singlets + ["doublet"] * n_doublets + ["negative"] * n_negatives,
        dtype=object,
    )
    weak = (state == "singlet") & (rng.random(N) < weak_rate)
    state[weak] = "weak"

    # hashtags [N, G]
    level = np.full((N, n_groups), hto_background)
    rows = np.arange(N)
    signal = np.where(weak, hto_signal * 0.15, hto_signal)
    has_signal = state != "negative"
    level[rows[has_signal], group_a[has_signal]] = signal[has_signal]
    level[rows[state == "doublet"], group_b[state == "doublet"]] = hto_signal
    hto = rng.poisson(level * rng.gamma(5.0, 0.2, size=level.shape))

    # genotypes [G, S]: 1 if the group carries the alternative allele
    genotype = (rng.random((n_groups, n_snps)) < 0.5).astype(float)
    expression = rng.gamma(2.0, 0.5, size=n_snps)
    # [G, S]
    snp_rate = snp_depth * expression * (genotype + 0.05)
    # [N, S]
    rate = snp_rate[group_a]
    doublet = state == "doublet"
    rate[doublet] += snp_rate[group_b[doublet]]
    rare = np.full((N, n_rare_snps), 0.01)
    snp_counts = rng.poisson(np.concatenate([rate, rare], axis=1))

    # RNA [N, genes] with gene-wise detection
    gene_level = rng.gamma(0.5, 2.0, size=n_genes)
    rna = rng.poisson(gene_level[np.newaxis] * rng.gamma(5.0, 0.2, size=(N, 1)))

    barcodes = [f"cell{i:05d}" for i in range(N)]
    truth = np.asarray(groups, dtype=object)[group_a]
    truth[doublet] = "doublet"

    adata = AnnData(
        X=csr_matrix(rna.astype(np.float32)),
        obs=pd.DataFrame(
            {"truth": truth, "hto_state": state}, index=barcodes
        ),
        var=pd.DataFrame(index=[f"Gene{i + 1}" for i in range(n_genes)]),
    )
    adata.obsm["HTO"] = pd.DataFrame(hto, index=adata.obs_names, columns=groups)

    snp_names = [f"chr1:{1000 * (i + 1)}" for i in range(n_snps + n_rare_snps)]
    snps = pd.DataFrame(snp_counts.T, index=snp_names, columns=barcodes)

    return adata, snps

# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import issparse

from ._utils import _check_fraction, _dense


logger = logging.getLogger("demuxsnpy")


def common_genes(
    adata: AnnData,
    n: int = 100,
    layer: str | None = None,
) -> list[str]:
    """
    Select genes detected in the largest fraction of cells.
    SNPs located within these genes are the most likely to be covered by reads
    in every cell, so they are used to subset the variant calls before genotyping.

    :param adata: AnnData object with RNA counts
    :type adata: AnnData
    :param n: how many genes to return, defaults to 100
    :type n: int, optional
    :param layer: if not None, ``adata.layers[layer]`` will be used instead of ``adata.X``, defaults to None
    :type layer: str | None, optional
    :return: names of the ``n`` most commonly detected genes, most common first
    :rtype: list[str]
    """
    if n <= 0:
        raise ValueError(f"`n` should be positive, got {n}")

    X = adata.X if layer is None else adata.layers[layer]
    if issparse(X):
        # [genes]
        detected = np.asarray((X > 0).sum(axis=0)).ravel()
    else:
        detected = (np.asarray(X) > 0).sum(axis=0)

    order = np.argsort(-detected, kind="stable")[:n]
    genes = adata.var_names[order].tolist()

    logger.info(
        "%i genes selected, detected in at least %.1f%% of cells",
        len(genes),
        100 * detected[order[-1]] / adata.n_obs if len(order) else 0,
    )
    return genes


def add_snps(
    adata: AnnData,
    snps: pd.DataFrame | AnnData,
    thresh: float = 0.95,
    snp_key: str = "SNP",
    inplace: bool = False,
) -> AnnData | None:
    """
    Add a SNP count matrix to ``adata.obsm[snp_key]``, keeping only SNPs
    with reads in at least ``thresh`` proportion of cells.

    :param adata: AnnData object, cells are matched by ``adata.obs_names``
    :type adata: AnnData
    :param snps: SNP counts, either a DataFrame (SNPs x cells, columns are cell barcodes) or an AnnData (cells x SNPs), e.g. from ``demuxsnpy.datasets.read_vartrix``
    :type snps: pd.DataFrame | AnnData
    :param thresh: minimal proportion of cells with nonzero counts for a SNP to be kept, defaults to 0.95
    :type thresh: float, optional
    :param snp_key: slot in ``adata.obsm`` to save retained SNPs to, defaults to "SNP"
    :type snp_key: str, optional
    :param inplace: if to write to ``adata`` or to return an annotated copy, defaults to False
    :type inplace: bool, optional
    :return: annotated copy of ``adata`` if ``inplace=False``
    """
    _check_fraction(thresh, "thresh")

    if isinstance(snps, AnnData):
        # [cells, SNPs]
        counts = pd.DataFrame(
            _dense(snps.X), index=snps.obs_names, columns=snps.var_names
        )
    elif isinstance(snps, pd.DataFrame):
        counts = snps.T
    else:
        raise ValueError("`snps` should be a pandas.DataFrame or an AnnData object")

    if counts.index.has_duplicates:
        raise ValueError("SNP matrix contains duplicated cell barcodes")
    if counts.columns.has_duplicates:
        raise ValueError("SNP matrix contains duplicated SNP names")

    missing = ~adata.obs_names.isin(counts.index)
    extra = ~counts.index.isin(adata.obs_names)
    if missing.any() or extra.any():
        raise ValueError(
            f"Cells of the SNP matrix don't match adata.obs_names: "
            f"{missing.sum()} cells are missing from the SNP matrix, "
            f"{extra.sum()} cells of the SNP matrix are not in adata"
        )

    # explicit matching by barcode
    counts = counts.loc[adata.obs_names]

    if (counts.to_numpy() < 0).any():
        raise ValueError("SNP counts should be non-negative")

    # [SNPs]
    observed = (counts > 0).mean(axis=0)
    keep = observed >= thresh
    logger.info(
        "%i out of %i SNPs have reads in at least %.0f%% of cells",
        keep.sum(),
        counts.shape[1],
        100 * thresh,
    )
    if not keep.any():
        logger.warning("No SNPs passed the filter, consider lowering `thresh`")

    adata = adata if inplace else adata.copy()
    adata.obsm[snp_key] = counts.loc[:, keep.to_numpy()].copy()

    if not inplace:
        return adata

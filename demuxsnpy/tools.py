# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from itertools import combinations
from math import ceil
from typing import Iterable

import numpy as np
import pandas as pd

from anndata import AnnData
from joblib import Parallel, delayed

from ._utils import (
    DOUBLET,
    NEGATIVE,
    RESERVED_LABELS,
    UNCERTAIN,
    GaussianMixtureModel,
    MixtureModel,
    _call_cells,
    _check_fraction,
    _check_normalize,
    _fit_hashtag,
    _get_table,
    _label_categories,
    _nearest_neighbors,
    _normalize_profiles,
    _resolve_cells,
    _vote,
)


logger = logging.getLogger("demuxsnpy")


def high_conf_calls(
    adata: AnnData,
    pacpt: float = 0.95,
    detection: float = 0.5,
    model: MixtureModel | None = None,
    hto_key: str = "HTO",
    train_key: str = "train",
    labels_key: str = "labels",
    posterior_key: str = "HTO_posterior",
    knn_key: str = "knn",
    n_jobs: int | None = None,
    inplace: bool = False,
) -> AnnData | None:
    """
    Label cells by their hashtag counts with a signal/background mixture model
    fitted to each hashtag independently, and flag confidently called singlets
    as training cells for ``reassign``.

    A cell is a doublet if two or more hashtags have signal posterior at least ``detection``,
    negative if none has, and a singlet of the only such hashtag if its posterior is at least ``pacpt``.
    The rest of the cells are "uncertain". ``pacpt`` can't be lower than ``detection``.
    A hashtag the mixture model can't fit is taken as absent: cells positive for other
    hashtags are called as usual, cells that would be negative are labeled "uncertain".

    Writes ``adata.obs[train_key]`` (bool), ``adata.obs[labels_key]`` (categorical),
    ``adata.obs[f"{labels_key}_prob"]`` (posterior of the call) and
    ``adata.obsm[posterior_key]`` (per hashtag signal posteriors).
    Previous ``reassign`` results in ``adata.obs[knn_key]`` are dropped.

    :param adata: AnnData object with hashtag counts in ``adata.obsm[hto_key]``
    :type adata: AnnData
    :param pacpt: acceptance probability for a singlet call to be trusted, defaults to 0.95
    :type pacpt: float, optional
    :param detection: signal posterior from which a hashtag is considered present, defaults to 0.5
    :type detection: float, optional
    :param model: object with ``fit(counts) -> posteriors`` method used for each hashtag. If None, ``GaussianMixtureModel()`` is used, defaults to None
    :type model: MixtureModel | None, optional
    :param hto_key: ``adata.obsm[hto_key]`` should be a DataFrame of hashtag counts (cells x hashtags), defaults to "HTO"
    :type hto_key: str, optional
    :param train_key: column of ``adata.obs`` for the trusted flag, defaults to "train"
    :type train_key: str, optional
    :param labels_key: column of ``adata.obs`` for the mixture labels, defaults to "labels"
    :type labels_key: str, optional
    :param posterior_key: slot of ``adata.obsm`` for the per hashtag posteriors, defaults to "HTO_posterior"
    :type posterior_key: str, optional
    :param knn_key: column of ``adata.obs`` with ``reassign`` results to be reset, defaults to "knn"
    :type knn_key: str, optional
    :param n_jobs: number of hashtags to fit in parallel with joblib, defaults to None
    :type n_jobs: int | None, optional
    :param inplace: if to write to ``adata`` or to return an annotated copy, defaults to False
    :type inplace: bool, optional
    :return: annotated copy of ``adata`` if ``inplace=False``
    """
    _check_fraction(pacpt, "pacpt")
    _check_fraction(detection, "detection")
    if pacpt < detection:
        raise ValueError(
            f"`pacpt` ({pacpt}) should not be lower than `detection` ({detection})"
        )

    hto = _get_table(adata, hto_key)
    groups = [str(col) for col in hto.columns]
    if len(set(groups)) != len(groups):
        raise ValueError(f"adata.obsm['{hto_key}'] contains duplicated hashtag names")
    reserved = set(groups) & set(RESERVED_LABELS)
    if reserved:
        raise ValueError(f"Hashtags can't be named {sorted(reserved)}")
    if (hto.to_numpy() < 0).any():
        raise ValueError("Hashtag counts should be non-negative")

    if model is None:
        model = GaussianMixtureModel()

    logger.info("Fitting mixture models for %i hashtags", len(groups))
    fits = Parallel(n_jobs=n_jobs)(
        delayed(_fit_hashtag)(model, group, hto[col].to_numpy())
        for group, col in zip(groups, hto.columns)
    )

    # [N, G]
    posteriors = np.full(hto.shape, np.nan)
    fitted = np.array([fit is not None for fit in fits], dtype=bool)
    for i, fit in enumerate(fits):
        if fit is not None:
            posteriors[:, i] = fit

    labels = np.full(adata.n_obs, UNCERTAIN, dtype=object)
    prob = np.full(adata.n_obs, np.nan)
    train = np.zeros(adata.n_obs, dtype=bool)
    if fitted.any():
        labels, prob, train = _call_cells(
            posteriors[:, fitted],
            [group for group, ok in zip(groups, fitted) if ok],
            pacpt,
            detection,
        )

    if not fitted.all():
        degenerate = [group for group, ok in zip(groups, fitted) if not ok]
        # without a positive fitted hashtag the call depends on the failed ones
        undecided = labels == NEGATIVE
        labels[undecided] = UNCERTAIN
        prob[undecided] = np.nan
        logger.warning(
            "Hashtags %s couldn't be fitted, %i cells without signal in other hashtags are labeled '%s'",
            degenerate,
            undecided.sum(),
            UNCERTAIN,
        )

    adata = adata if inplace else adata.copy()

    adata.obs[train_key] = train
    adata.obs[labels_key] = pd.Categorical(
        labels, categories=_label_categories(groups)
    )
    adata.obs[f"{labels_key}_prob"] = prob
    adata.obsm[posterior_key] = pd.DataFrame(
        posteriors, index=adata.obs_names, columns=groups
    )
    for col in (knn_key, f"{knn_key}_score"):
        if col in adata.obs:
            del adata.obs[col]

    logger.info(
        "%i out of %i cells are trusted singlets", train.sum(), adata.n_obs
    )

    if not inplace:
        return adata


def _doublets_per_pair(
    pool_sizes: Iterable[int], n_pairs: int, n_doublets: int | None
) -> int:
    if n_doublets is not None:
        if n_doublets <= 0:
            raise ValueError(f"`n_doublets` should be positive, got {n_doublets}")
        return n_doublets
    if n_pairs == 0:
        return 0
    # doublet class about the size of an average singlet class
    sizes = [size for size in pool_sizes if size > 0]
    return max(1, ceil(np.mean(sizes) / n_pairs))


def _group_pools(labels: pd.Series) -> dict:
    if isinstance(labels.dtype, pd.CategoricalDtype):
        groups = list(labels.cat.categories)
    else:
        groups = sorted(labels.dropna().unique())

    values = labels.to_numpy()
    return {group: np.flatnonzero(values == group) for group in groups}


def simulate_doublets(
    profiles: pd.DataFrame,
    labels: pd.Series | Iterable[str],
    n_doublets: int | None = None,
    random_state: int | np.random.Generator | None = 0,
) -> AnnData:
    """
    Synthesize doublet SNP profiles for every pair of groups by summing the profiles
    of cells drawn with replacement from each group of the pair.
    Groups without cells are skipped.

    :param profiles: SNP counts of singlet cells (cells x SNPs)
    :type profiles: pd.DataFrame
    :param labels: group of each cell of ``profiles``
    :type labels: pd.Series | Iterable[str]
    :param n_doublets: number of doublets per pair of groups. If None, it's chosen so that all the doublets together are about the size of an average group, defaults to None
    :type n_doublets: int | None, optional
    :param random_state: seed or ``numpy.random.Generator``, defaults to 0
    :type random_state: int | np.random.Generator | None, optional
    :return: AnnData with synthetic profiles in ``X`` and the pair of groups in ``obs["group_a"]``, ``obs["group_b"]``
    :rtype: AnnData
    """
    if isinstance(labels, pd.Series):
        if not labels.index.equals(profiles.index):
            raise ValueError("`labels` index should match `profiles` index")
    else:
        labels = list(labels)
        if len(labels) != profiles.shape[0]:
            raise ValueError("`labels` should have a label for every profile")
        labels = pd.Series(labels, index=profiles.index)

    pools = _group_pools(labels)
    empty = [group for group, pool in pools.items() if pool.size == 0]
    if empty:
        logger.warning("No cells for groups %s, their doublets are skipped", empty)

    pairs = list(combinations([group for group, pool in pools.items() if pool.size], 2))
    n = _doublets_per_pair((pool.size for pool in pools.values()), len(pairs), n_doublets)

    rng = np.random.default_rng(random_state)
    X = profiles.to_numpy()

    X_doublets, group_a, group_b = [], [], []
    for a, b in pairs:
        idx_a = rng.choice(pools[a], size=n, replace=True)
        idx_b = rng.choice(pools[b], size=n, replace=True)
        X_doublets.append(X[idx_a] + X[idx_b])
        group_a += [a] * n
        group_b += [b] * n

    X_doublets = (
        np.concatenate(X_doublets)
        if X_doublets
        else np.zeros((0, X.shape[1]), dtype=X.dtype)
    )
    obs = pd.DataFrame(
        {"group_a": group_a, "group_b": group_b},
        index=[f"{DOUBLET}-{i}" for i in range(len(group_a))],
        dtype=object,
    )
    logger.info(
        "%i doublets simulated for %i pairs of groups", X_doublets.shape[0], len(pairs)
    )

    return AnnData(
        X=X_doublets,
        obs=obs,
        var=pd.DataFrame(index=profiles.columns.astype(str)),
    )


def _groups_of(labels: pd.Series) -> list[str]:
    if isinstance(labels.dtype, pd.CategoricalDtype):
        values = list(labels.cat.categories)
    else:
        values = sorted(labels.dropna().astype(str).unique())
    return [value for value in values if value not in RESERVED_LABELS]


def reassign(
    adata: AnnData,
    k: int = 5,
    n_doublets: int | None = None,
    train_cells: Iterable[str] | np.ndarray | None = None,
    predict_cells: Iterable[str] | np.ndarray | None = None,
    normalize: str | None = None,
    metric: str = "euclidean",
    predict_doublets: bool = False,
    random_state: int | np.random.Generator | None = 0,
    n_jobs: int | None = None,
    snp_key: str = "SNP",
    train_key: str = "train",
    labels_key: str = "labels",
    knn_key: str = "knn",
    inplace: bool = False,
) -> AnnData | None:
    """
    Reassign cells to groups with a kNN classifier over SNP counts, trained on the
    trusted singlets and on doublets simulated from them (see ``simulate_doublets``).

    Neighbors are ordered by distance, equal distances by training order
    (training cells in ``adata.obs`` order, then simulated doublets).
    The label is the majority vote of the ``k`` nearest neighbors, a vote tie goes
    to the tied class of the nearest neighbor. Unless ``predict_doublets``,
    doublets only take up neighbor slots and can't win the vote; if all ``k`` neighbors
    are doublets, the label of the nearest training cell is used.
    A group without training cells is never predicted.

    Writes ``adata.obs[knn_key]`` and ``adata.obs[f"{knn_key}_score"]`` (the share of
    the neighbors voting for the label) for ``predict_cells``, other cells get NaN.

    :param adata: AnnData object after ``demuxsnpy.pp.add_snps`` and ``demuxsnpy.tl.high_conf_calls``
    :type adata: AnnData
    :param k: number of neighbors, defaults to 5
    :type k: int, optional
    :param n_doublets: number of simulated doublets per pair of groups, see ``simulate_doublets``, defaults to None
    :type n_doublets: int | None, optional
    :param train_cells: barcodes or boolean mask of cells to train on. If None, ``adata.obs[train_key]`` is used, defaults to None
    :type train_cells: Iterable[str] | np.ndarray | None, optional
    :param predict_cells: barcodes or boolean mask of cells to label. If None, all cells are labeled, defaults to None
    :type predict_cells: Iterable[str] | np.ndarray | None, optional
    :param normalize: transformation of SNP counts before computing distances: None (raw counts), "log1p" or "binary", defaults to None
    :type normalize: str | None, optional
    :param metric: distance metric passed to ``sklearn.metrics.pairwise_distances_chunked``, defaults to "euclidean"
    :type metric: str, optional
    :param predict_doublets: if "doublet" is a possible label, defaults to False
    :type predict_doublets: bool, optional
    :param random_state: seed or ``numpy.random.Generator`` for doublet simulation, defaults to 0
    :type random_state: int | np.random.Generator | None, optional
    :param n_jobs: number of jobs for distance computation, defaults to None
    :type n_jobs: int | None, optional
    :param snp_key: ``adata.obsm[snp_key]`` should contain SNP counts, defaults to "SNP"
    :type snp_key: str, optional
    :param train_key: column of ``adata.obs`` with the trusted flag, defaults to "train"
    :type train_key: str, optional
    :param labels_key: column of ``adata.obs`` with training labels, defaults to "labels"
    :type labels_key: str, optional
    :param knn_key: column of ``adata.obs`` to save labels to, defaults to "knn"
    :type knn_key: str, optional
    :param inplace: if to write to ``adata`` or to return an annotated copy, defaults to False
    :type inplace: bool, optional
    :return: annotated copy of ``adata`` if ``inplace=False``
    """
    if k < 1:
        raise ValueError(f"`k` should be positive, got {k}")
    _check_normalize(normalize)

    snps = _get_table(adata, snp_key)
    assert (
        labels_key in adata.obs
    ), f"'{labels_key}' not found in adata.obs. First, run demuxsnpy.tl.high_conf_calls."

    if train_cells is None:
        assert (
            train_key in adata.obs
        ), f"'{train_key}' not found in adata.obs. First, run demuxsnpy.tl.high_conf_calls or set `train_cells`."
        default_train = adata.obs[train_key].to_numpy(dtype=bool)
    else:
        default_train = None
    train_mask = _resolve_cells(adata, train_cells, default_train, "train_cells")
    predict_mask = _resolve_cells(
        adata, predict_cells, np.ones(adata.n_obs, dtype=bool), "predict_cells"
    )

    groups = _groups_of(adata.obs[labels_key])
    train_labels = adata.obs[labels_key][train_mask].astype(object)
    not_group = ~train_labels.isin(groups)
    if not_group.any():
        raise ValueError(
            f"{not_group.sum()} training cells are not labeled with a group, "
            f"e.g. '{train_labels.index[not_group][0]}' is '{train_labels[not_group].iloc[0]}'"
        )
    train_labels = pd.Series(
        pd.Categorical(train_labels, categories=groups), index=train_labels.index
    )

    # validate the training set size before simulating
    pool_sizes = train_labels.value_counts().reindex(groups).to_numpy()
    present = [group for group, size in zip(groups, pool_sizes) if size > 0]
    n_pairs = len(present) * (len(present) - 1) // 2
    n_train = int(train_mask.sum()) + n_pairs * _doublets_per_pair(
        pool_sizes, n_pairs, n_doublets
    )
    n_classes = len(present) + (1 if n_pairs else 0)
    if n_classes < 2:
        raise ValueError(
            f"Training set should contain at least two classes, found {n_classes}"
        )
    if k >= n_train:
        raise ValueError(
            f"`k` should be less than the training set size ({n_train}), got {k}"
        )

    unreachable = [group for group in groups if group not in present]
    if unreachable:
        logger.warning(
            "No training cells for groups %s, they won't be predicted", unreachable
        )

    doublets = simulate_doublets(
        snps[train_mask], train_labels, n_doublets=n_doublets, random_state=random_state
    )

    classes = groups + [DOUBLET]
    # [N_train] class codes: real cells, then doublets
    codes = np.concatenate(
        [train_labels.cat.codes.to_numpy(), np.full(doublets.n_obs, len(groups))]
    ).astype(int)

    # [N_train, SNPs]
    X_train = _normalize_profiles(
        np.concatenate([snps.to_numpy()[train_mask], np.asarray(doublets.X)]),
        normalize,
    )
    # [N_pred, SNPs]
    X_query = _normalize_profiles(snps.to_numpy()[predict_mask], normalize)

    logger.info(
        "Reassigning %i cells with %i nearest neighbors among %i training profiles",
        X_query.shape[0],
        k,
        X_train.shape[0],
    )
    neighbors, nearest_real = _nearest_neighbors(
        X_query, X_train, k, n_real=int(train_mask.sum()), metric=metric, n_jobs=n_jobs
    )

    eligible = np.ones(len(classes), dtype=bool)
    eligible[-1] = predict_doublets
    winner, score = _vote(
        neighbors, codes, len(classes), eligible, fallback=codes[nearest_real]
    )

    values = np.full(adata.n_obs, None, dtype=object)
    values[predict_mask] = np.asarray(classes, dtype=object)[winner]
    scores = np.full(adata.n_obs, np.nan)
    scores[predict_mask] = score

    adata = adata if inplace else adata.copy()
    adata.obs[knn_key] = pd.Categorical(
        values, categories=classes if predict_doublets else groups
    )
    adata.obs[f"{knn_key}_score"] = scores

    changed = (
        adata.obs[knn_key][predict_mask].astype(object)
        != adata.obs[labels_key][predict_mask].astype(object)
    ).sum()
    logger.info("%i out of %i cells changed their label", changed, predict_mask.sum())

    if not inplace:
        return adata

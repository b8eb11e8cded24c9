# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Protocol

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import issparse
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import pairwise_distances_chunked
from sklearn.mixture import GaussianMixture

logger = logging.getLogger("demuxsnpy")

DOUBLET = "doublet"
NEGATIVE = "negative"
UNCERTAIN = "uncertain"
RESERVED_LABELS = (DOUBLET, NEGATIVE, UNCERTAIN)


class DegenerateFitError(ValueError):
    """Raised by a mixture model when a hashtag shows no signal/background split."""


class MixtureModel(Protocol):
    def fit(self, counts: np.ndarray) -> np.ndarray:
        """Return the per-cell posterior probability of the signal component."""
        ...


class GaussianMixtureModel:
    """
    Two-component Gaussian mixture over the (log1p) counts of a single hashtag.
    The component with the larger mean is taken as the signal component.

    :param min_cells: fewer cells than this is a degenerate fit, defaults to 10
    :type min_cells: int, optional
    :param min_separation: minimal distance between component means, defaults to 0.5
    :type min_separation: float, optional
    :param log: if to fit on ``log1p`` of the counts, set False for normalized input, defaults to True
    :type log: bool, optional
    :param random_state: random state of ``GaussianMixture``, defaults to 0
    :type random_state: int, optional
    """

    def __init__(
        self,
        min_cells: int = 10,
        min_separation: float = 0.5,
        log: bool = True,
        random_state: int = 0,
        **gmm_kwargs,
    ) -> None:
        self.min_cells = min_cells
        self.min_separation = min_separation
        self.log = log
        self.random_state = random_state
        self.gmm_kwargs = {"n_init": 3, **gmm_kwargs}

    def fit(self, counts: np.ndarray) -> np.ndarray:
        x = np.asarray(counts, dtype=np.float64).ravel()
        if x.shape[0] < self.min_cells:
            raise DegenerateFitError(
                f"too few cells ({x.shape[0]}) to fit a mixture model"
            )
        if self.log:
            x = np.log1p(x)
        if np.unique(x).shape[0] < 2:
            raise DegenerateFitError("counts are constant")

        gmm = GaussianMixture(
            n_components=2, random_state=self.random_state, **self.gmm_kwargs
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            gmm.fit(x[:, np.newaxis])
        if not gmm.converged_:
            raise DegenerateFitError("mixture model did not converge")

        means = gmm.means_.ravel()
        if abs(means[1] - means[0]) < self.min_separation:
            raise DegenerateFitError(
                f"components are not separated (means {means[0]:.2f}, {means[1]:.2f})"
            )
        signal, background = np.argmax(means), np.argmin(means)

        posterior = gmm.predict_proba(x[:, np.newaxis])[:, signal]

        # the wider component owns both tails, keep posterior monotone in counts
        posterior[x <= means[background]] = 0.0
        order = np.argsort(x, kind="stable")
        posterior[order] = np.maximum.accumulate(posterior[order])

        return posterior


def _fit_hashtag(model: MixtureModel, name: str, counts: np.ndarray):
    try:
        return model.fit(counts)
    except DegenerateFitError as exc:
        logger.warning("Degenerate mixture fit for hashtag '%s': %s", name, exc)
        return None


def _call_cells(
    posteriors: np.ndarray, groups: list[str], pacpt: float, detection: float
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Turns per-hashtag signal posteriors [N, G] into labels, acceptance
    probabilities and the trusted flag.
    """
    N, G = posteriors.shape
    positive = posteriors >= detection
    n_positive = positive.sum(axis=1)

    # [N, G] descending
    ranked = -np.sort(-posteriors, axis=1)
    best = np.argmax(posteriors, axis=1)
    p_best = ranked[:, 0]

    labels = np.full(N, UNCERTAIN, dtype=object)
    prob = p_best.copy()

    doublet = n_positive >= 2
    labels[doublet] = DOUBLET
    if G > 1:
        prob[doublet] = ranked[doublet, 1]

    negative = n_positive == 0
    labels[negative] = NEGATIVE
    prob[negative] = 1.0 - p_best[negative]

    singlet = (n_positive == 1) & (p_best >= pacpt)
    labels[singlet] = np.asarray(groups, dtype=object)[best[singlet]]

    return labels, prob, singlet


def _label_categories(groups: list[str]) -> list[str]:
    return list(groups) + list(RESERVED_LABELS)


def _check_fraction(value: float, name: str) -> None:
    if not 0 <= value <= 1:
        raise ValueError(f"`{name}` should be in [0, 1], got {value}")


def _get_table(adata: AnnData, key: str) -> pd.DataFrame:
    assert (
        key in adata.obsm
    ), f"'{key}' not found in adata.obsm. Check the key or run the preceding step first."

    table = adata.obsm[key]
    if not isinstance(table, pd.DataFrame):
        raise ValueError(
            f"adata.obsm['{key}'] should be a pandas.DataFrame with named columns"
        )
    if not table.index.equals(adata.obs_names):
        raise ValueError(
            f"Cells of adata.obsm['{key}'] are not aligned with adata.obs_names"
        )
    return table


def _dense(X) -> np.ndarray:
    return X.toarray() if issparse(X) else np.asarray(X)


def _resolve_cells(adata: AnnData, cells, default: np.ndarray, name: str) -> np.ndarray:
    """Turns a boolean mask or a collection of barcodes into a boolean mask over obs."""
    if cells is None:
        return default

    cells = np.asarray(cells)
    if cells.dtype == bool:
        if cells.shape[0] != adata.n_obs:
            raise ValueError(
                f"Boolean `{name}` has length {cells.shape[0]}, expected {adata.n_obs}"
            )
        return cells

    unknown = ~pd.Index(cells).isin(adata.obs_names)
    if unknown.any():
        raise ValueError(
            f"{unknown.sum()} cells from `{name}` are not found in adata.obs_names, "
            f"e.g. '{cells[unknown][0]}'"
        )
    return adata.obs_names.isin(cells)


def _check_normalize(normalize: str | None) -> None:
    if normalize not in (None, "log1p", "binary"):
        raise ValueError(
            f"`normalize` should be one of None, 'log1p' or 'binary', got '{normalize}'"
        )


def _normalize_profiles(X: np.ndarray, normalize: str | None) -> np.ndarray:
    _check_normalize(normalize)
    if normalize == "log1p":
        return np.log1p(X.astype(np.float64))
    if normalize == "binary":
        return (X > 0).astype(np.float64)
    return X.astype(np.float64)


def _nearest_neighbors(
    X_query: np.ndarray,
    X_train: np.ndarray,
    k: int,
    n_real: int,
    metric: str = "euclidean",
    n_jobs: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    For every query row returns the k nearest training rows ordered by
    (distance, training index) and the nearest of the first ``n_real`` rows.
    """
    if X_query.shape[0] == 0:
        return np.empty((0, k), dtype=int), np.empty(0, dtype=int)

    def reduce_func(D_chunk, start):
        # stable sort: among equal distances the lowest training index comes first
        order = np.argsort(D_chunk, axis=1, kind="stable")[:, :k]
        nearest_real = np.argmin(D_chunk[:, :n_real], axis=1)
        return order, nearest_real

    neighbors, nearest_real = [], []
    for order, real in pairwise_distances_chunked(
        X_query, X_train, reduce_func=reduce_func, metric=metric, n_jobs=n_jobs
    ):
        neighbors.append(order)
        nearest_real.append(real)

    return np.concatenate(neighbors), np.concatenate(nearest_real)


def _vote(
    neighbors: np.ndarray,
    codes: np.ndarray,
    n_classes: int,
    eligible: np.ndarray,
    fallback: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Majority vote among neighbors [Nq, k] (ordered nearest first).
    Vote ties go to the tied class of the nearest neighbor,
    classes not in ``eligible`` can't win, rows without eligible votes take ``fallback``.
    Returns class codes and the winner's share of votes.
    """
    Nq, k = neighbors.shape
    rows = np.arange(Nq)[:, np.newaxis]

    # [Nq, k]
    nb_codes = codes[neighbors]

    # [Nq, n_classes]
    votes = np.zeros((Nq, n_classes), dtype=int)
    np.add.at(votes, (rows, nb_codes), 1)
    votes[:, ~eligible] = 0

    # rank of the nearest neighbor of each class
    first = np.full((Nq, n_classes), k, dtype=int)
    for j in reversed(range(k)):
        first[rows[:, 0], nb_codes[:, j]] = j

    best = votes.max(axis=1)
    tied = (votes == best[:, np.newaxis]) & (best[:, np.newaxis] > 0)
    winner = np.where(tied, first, k + 1).argmin(axis=1)

    no_votes = best == 0
    winner[no_votes] = fallback[no_votes]

    score = best / k
    score[no_votes] = 0.0
    return winner, score

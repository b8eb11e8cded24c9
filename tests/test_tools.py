import numpy as np
import pandas as pd
import pytest

from anndata import AnnData

import demuxsnpy as ds
from demuxsnpy._utils import _nearest_neighbors, _vote


class PosteriorModel:
    """Takes hashtag values as ready signal posteriors."""

    def fit(self, counts):
        return np.asarray(counts, dtype=float)


class FailingModel:
    def __init__(self, fail_on_max):
        self.fail_on_max = fail_on_max

    def fit(self, counts):
        if counts.max() == self.fail_on_max:
            raise ds.DegenerateFitError("no separation")
        return np.asarray(counts, dtype=float)


def posterior_adata(posteriors, groups=("A", "B", "C")):
    posteriors = np.asarray(posteriors, dtype=float)
    names = [f"cell{i}" for i in range(posteriors.shape[0])]
    adata = AnnData(obs=pd.DataFrame(index=names))
    adata.obsm["HTO"] = pd.DataFrame(posteriors, index=names, columns=list(groups))
    return adata


class TestHighConfCalls:
    adata, snps = ds.datasets.simulate_multiplexed(random_state=0)
    pacpt = 0.95

    def test_calling_rules(self):
        adata = posterior_adata(
            [
                [0.99, 0.01, 0.00],
                [0.90, 0.10, 0.00],
                [0.70, 0.60, 0.00],
                [0.10, 0.20, 0.30],
                [0.00, 0.97, 0.40],
            ]
        )
        res = ds.tl.high_conf_calls(adata, model=PosteriorModel())

        assert res.obs["labels"].astype(str).tolist() == [
            "A",
            "uncertain",
            "doublet",
            "negative",
            "B",
        ]
        assert res.obs["train"].tolist() == [True, False, False, False, True]
        assert np.allclose(res.obs["labels_prob"], [0.99, 0.90, 0.60, 0.70, 0.97])
        assert list(res.obs["labels"].cat.categories) == [
            "A",
            "B",
            "C",
            "doublet",
            "negative",
            "uncertain",
        ]
        assert "train" not in adata.obs

    def test_trusted_are_confident_singlets(self):
        adata = ds.tl.high_conf_calls(self.adata, pacpt=self.pacpt)
        train = adata.obs["train"].to_numpy()
        groups = list(adata.obsm["HTO"].columns)

        assert train.sum() > 0
        assert adata.obs["labels"][train].isin(groups).all()
        assert (adata.obs["labels_prob"][train] >= self.pacpt).all()
        assert (
            adata.obs["labels"][train].astype(str) == adata.obs["truth"][train]
        ).mean() > 0.99
        # strong singlets are mostly trusted
        strong = (adata.obs["hto_state"] == "singlet").to_numpy()
        assert train[strong].mean() > 0.9
        assert adata.obs["labels"][adata.obs["hto_state"] == "doublet"].eq(
            "doublet"
        ).mean() > 0.8

    def test_degenerate_hashtag(self):
        adata = posterior_adata(
            [
                [0.99, 0.5, 0.99],
                [0.99, 0.5, 0.00],
                [0.00, 0.5, 0.10],
                [0.00, 0.5, 0.97],
            ]
        )
        res = ds.tl.high_conf_calls(adata, model=FailingModel(fail_on_max=0.5))

        assert res.obs["labels"].astype(str).tolist() == [
            "doublet",
            "A",
            "uncertain",
            "C",
        ]
        assert res.obs["train"].tolist() == [False, True, False, True]
        assert np.isnan(res.obs["labels_prob"].iloc[2])
        assert res.obsm["HTO_posterior"]["B"].isna().all()
        assert "B" in res.obs["labels"].cat.categories

    def test_parallel_fits(self):
        sequential = ds.tl.high_conf_calls(self.adata, n_jobs=None)
        parallel = ds.tl.high_conf_calls(self.adata, n_jobs=2)

        assert sequential.obs["labels"].equals(parallel.obs["labels"])
        assert sequential.obs["train"].equals(parallel.obs["train"])
        pd.testing.assert_frame_equal(
            sequential.obsm["HTO_posterior"], parallel.obsm["HTO_posterior"]
        )

    def test_rerun_resets_reassignment(self):
        adata = ds.tl.high_conf_calls(self.adata)
        adata.obs["knn"] = adata.obs["labels"]
        adata.obs["knn_score"] = 1.0

        ds.tl.high_conf_calls(adata, inplace=True)

        assert "knn" not in adata.obs
        assert "knn_score" not in adata.obs

    def test_invalid(self):
        with pytest.raises(ValueError):
            ds.tl.high_conf_calls(self.adata, pacpt=1.1)
        with pytest.raises(ValueError):
            ds.tl.high_conf_calls(self.adata, detection=-0.1)
        with pytest.raises(ValueError, match="detection"):
            ds.tl.high_conf_calls(self.adata, pacpt=0.3, detection=0.5)
        with pytest.raises(ValueError, match="duplicated"):
            ds.tl.high_conf_calls(
                posterior_adata([[0.1, 0.2]], groups=("A", "A")),
                model=PosteriorModel(),
            )
        with pytest.raises(ValueError, match="non-negative"):
            ds.tl.high_conf_calls(
                posterior_adata([[-1.0, 0.2]], groups=("A", "B")),
                model=PosteriorModel(),
            )
        with pytest.raises(ValueError, match="named"):
            ds.tl.high_conf_calls(
                posterior_adata([[0.1, 0.2]], groups=("A", "doublet")),
                model=PosteriorModel(),
            )
        with pytest.raises(AssertionError):
            ds.tl.high_conf_calls(self.adata, hto_key="ADT")


class TestGaussianMixtureModel:
    def test_bimodal(self):
        rng = np.random.default_rng(0)
        counts = np.concatenate([rng.poisson(5, 300), rng.poisson(300, 100)])
        posterior = ds.GaussianMixtureModel().fit(counts)

        assert posterior[300:].min() > 0.99
        assert posterior[:300].max() < 0.01

        order = np.argsort(counts, kind="stable")
        assert (np.diff(posterior[order]) >= 0).all()

    def test_degenerate(self):
        with pytest.raises(ds.DegenerateFitError):
            ds.GaussianMixtureModel().fit(np.full(100, 7))
        with pytest.raises(ds.DegenerateFitError):
            ds.GaussianMixtureModel(min_cells=10).fit(np.arange(5))


class TestSimulateDoublets:
    profiles = pd.DataFrame(
        [[1, 0, 0], [2, 0, 0], [0, 10, 0], [0, 20, 0], [0, 0, 100]],
        index=[f"cell{i}" for i in range(5)],
        columns=["s1", "s2", "s3"],
    )
    labels = pd.Series(["A", "A", "B", "B", "C"], index=profiles.index)

    def test_deterministic(self):
        first = ds.tl.simulate_doublets(self.profiles, self.labels, 10, random_state=7)
        second = ds.tl.simulate_doublets(self.profiles, self.labels, 10, random_state=7)
        other = ds.tl.simulate_doublets(self.profiles, self.labels, 10, random_state=8)

        assert np.array_equal(first.X, second.X)
        assert first.X.tobytes() == second.X.tobytes()
        assert first.obs.equals(second.obs)
        assert not np.array_equal(first.X, other.X)

    def test_generator(self):
        first = ds.tl.simulate_doublets(
            self.profiles, self.labels, 10, random_state=np.random.default_rng(3)
        )
        second = ds.tl.simulate_doublets(self.profiles, self.labels, 10, random_state=3)

        assert np.array_equal(first.X, second.X)

    def test_profiles_are_pair_sums(self):
        doublets = ds.tl.simulate_doublets(self.profiles, self.labels, 20)

        assert doublets.n_obs == 3 * 20
        assert list(doublets.var_names) == ["s1", "s2", "s3"]

        pairs = doublets.obs[["group_a", "group_b"]].drop_duplicates()
        assert [tuple(p) for p in pairs.to_numpy()] == [
            ("A", "B"),
            ("A", "C"),
            ("B", "C"),
        ]

        X = self.profiles.to_numpy()
        for row, (a, b) in zip(doublets.X, doublets.obs[["group_a", "group_b"]].to_numpy()):
            sums = {
                tuple(X[i] + X[j])
                for i in np.flatnonzero(self.labels == a)
                for j in np.flatnonzero(self.labels == b)
            }
            assert tuple(row) in sums

    def test_names_unique_with_underscores(self):
        labels = pd.Series(["A", "A_B", "B_C", "C", "C"], index=self.profiles.index)
        doublets = ds.tl.simulate_doublets(self.profiles, labels, 2)

        assert doublets.n_obs == 6 * 2
        assert doublets.obs_names.is_unique

    def test_empty_group_skipped(self):
        labels = pd.Series(
            pd.Categorical(
                ["A", "A", "B", "B", "B"], categories=["A", "B", "C"]
            ),
            index=self.profiles.index,
        )
        doublets = ds.tl.simulate_doublets(self.profiles, labels, 4)

        assert doublets.n_obs == 4
        assert set(doublets.obs["group_a"]) == {"A"}
        assert set(doublets.obs["group_b"]) == {"B"}

    def test_default_number(self):
        # mean group size 5 / 3 over 3 pairs
        doublets = ds.tl.simulate_doublets(self.profiles, self.labels)
        assert doublets.n_obs == 3

        single = ds.tl.simulate_doublets(self.profiles.iloc[:2], ["A", "A"])
        assert single.n_obs == 0
        assert single.n_vars == 3

    def test_invalid(self):
        with pytest.raises(ValueError):
            ds.tl.simulate_doublets(self.profiles, self.labels, 0)
        with pytest.raises(ValueError):
            ds.tl.simulate_doublets(self.profiles, ["A", "B"])


class TestReassign:
    adata, snps = ds.datasets.simulate_multiplexed(random_state=0)
    adata = ds.tl.high_conf_calls(ds.pp.add_snps(adata, snps, thresh=0.1))
    groups = [f"Hashtag{i + 1}" for i in range(4)]

    def test_every_cell_gets_a_group(self):
        adata = ds.tl.reassign(self.adata, k=5)

        assert adata.obs["knn"].notna().all()
        assert adata.obs["knn"].isin(self.groups).all()
        untrusted = ~adata.obs["train"]
        assert untrusted.sum() > 0
        assert adata.obs["knn"][untrusted].isin(self.groups).all()
        assert ((adata.obs["knn_score"] >= 0) & (adata.obs["knn_score"] <= 1)).all()

    def test_accuracy(self):
        adata = ds.tl.reassign(self.adata, k=5)
        singlets = adata.obs["truth"] != "doublet"

        agreement = adata.obs["knn"][singlets].astype(str) == adata.obs["truth"][singlets]
        assert agreement.mean() > 0.95

        # weak hashtag signal is rescued
        weak = adata.obs["hto_state"] == "weak"
        assert (~adata.obs["train"][weak]).mean() > 0.5
        assert (
            adata.obs["knn"][weak].astype(str) == adata.obs["truth"][weak]
        ).mean() > 0.95

    def test_idempotent(self):
        first = ds.tl.reassign(self.adata, k=5, random_state=3)
        second = ds.tl.reassign(self.adata, k=5, random_state=3)

        assert first.obs["knn"].equals(second.obs["knn"])
        assert first.obs["knn_score"].equals(second.obs["knn_score"])

    def test_raw_data_untouched(self):
        snp = self.adata.obsm["SNP"].copy()
        hto = self.adata.obsm["HTO"].copy()

        res = ds.tl.reassign(self.adata, k=3)
        ds.tl.reassign(res, k=7, inplace=True)

        assert "knn" not in self.adata.obs
        pd.testing.assert_frame_equal(self.adata.obsm["SNP"], snp)
        pd.testing.assert_frame_equal(res.obsm["SNP"], snp)
        pd.testing.assert_frame_equal(res.obsm["HTO"], hto)

    def test_group_without_training_cells(self):
        train = self.adata.obs["train"] & (self.adata.obs["labels"] != "Hashtag4")
        adata = ds.tl.reassign(self.adata, train_cells=train.to_numpy())

        assert "Hashtag4" not in set(adata.obs["knn"].astype(str))
        assert adata.obs["knn"].notna().all()

    def test_flat_hashtag(self):
        adata = self.adata.copy()
        hto = adata.obsm["HTO"].copy()
        hto["Hashtag4"] = 7
        adata.obsm["HTO"] = hto

        adata = ds.tl.high_conf_calls(adata)
        train = adata.obs["train"]

        assert train.sum() > 0
        assert set(adata.obs["labels"][train].astype(str)) == {
            "Hashtag1",
            "Hashtag2",
            "Hashtag3",
        }
        assert (adata.obs["labels"] == "doublet").sum() > 0

        adata = ds.tl.reassign(adata)
        assert adata.obs["knn"].notna().all()
        assert "Hashtag4" not in set(adata.obs["knn"].astype(str))

    def test_predict_cells(self):
        predict = self.adata.obs_names[~self.adata.obs["train"].to_numpy()]
        adata = ds.tl.reassign(self.adata, predict_cells=predict)

        assert adata.obs["knn"][predict].notna().all()
        assert adata.obs["knn"][adata.obs["train"]].isna().all()
        assert adata.obs["knn_score"][adata.obs["train"]].isna().all()

    def test_mislabeled_training_cells(self):
        adata = self.adata.copy()
        trusted = adata.obs_names[
            (adata.obs["train"] & (adata.obs["labels"] == "Hashtag1")).to_numpy()
        ]
        mislabeled = trusted[:10]
        adata.obs.loc[mislabeled, "labels"] = "Hashtag2"

        res = ds.tl.reassign(
            adata, k=5, predict_cells=adata.obs_names[adata.obs["train"].to_numpy()]
        )

        assert (res.obs["knn"][mislabeled] == "Hashtag1").mean() >= 0.8

    def test_held_out(self):
        trusted = self.adata.obs_names[self.adata.obs["train"].to_numpy()]
        trusted = np.random.default_rng(0).permutation(trusted)
        train, test = trusted[:300], trusted[300:]

        adata = ds.tl.reassign(self.adata, train_cells=train, predict_cells=test)

        agreement = (
            adata.obs["knn"][test].astype(str) == adata.obs["labels"][test].astype(str)
        )
        assert agreement.mean() > 0.98

    def test_predict_doublets(self):
        adata = ds.tl.reassign(self.adata, k=5, predict_doublets=True)
        doublets = adata.obs["truth"] == "doublet"

        assert "doublet" in adata.obs["knn"].cat.categories
        assert (adata.obs["knn"][doublets] == "doublet").mean() > 0.8

    def test_normalize(self):
        for normalize in ["log1p", "binary"]:
            adata = ds.tl.reassign(self.adata, normalize=normalize)
            assert adata.obs["knn"].isin(self.groups).all()

        with pytest.raises(ValueError):
            ds.tl.reassign(self.adata, normalize="zscore")

    def test_invalid(self):
        with pytest.raises(ValueError):
            ds.tl.reassign(self.adata, k=0)
        with pytest.raises(ValueError, match="training set size"):
            ds.tl.reassign(self.adata, k=10**6)

        one_group = self.adata.obs["train"] & (self.adata.obs["labels"] == "Hashtag1")
        with pytest.raises(ValueError, match="two classes"):
            ds.tl.reassign(self.adata, train_cells=one_group.to_numpy())

        negative = self.adata.obs_names[(self.adata.obs["labels"] == "negative").to_numpy()]
        with pytest.raises(ValueError, match="not labeled with a group"):
            ds.tl.reassign(self.adata, train_cells=negative)

        with pytest.raises(ValueError, match="not found"):
            ds.tl.reassign(self.adata, predict_cells=["no_such_cell"])

        with pytest.raises(AssertionError):
            ds.tl.reassign(self.adata, snp_key="SNP2")


class TestVoting:
    def test_distance_ties_go_to_lowest_index(self):
        X_train = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 0.0]])
        X_query = np.array([[1.0, 0.0]])

        neighbors, nearest_real = _nearest_neighbors(X_query, X_train, k=2, n_real=4)

        assert neighbors.tolist() == [[0, 1]]
        assert nearest_real.tolist() == [0]

    def test_vote_ties_go_to_nearest(self):
        codes = np.array([0, 1, 1, 0, 2])
        neighbors = np.array([[1, 0, 2, 3], [4, 4, 0, 1], [4, 4, 4, 4]])
        eligible = np.array([True, True, False])

        winner, score = _vote(
            neighbors, codes, 3, eligible, fallback=np.array([0, 0, 1])
        )

        # 2:2 tie, class 1 is nearest; ineligible class ignored; only ineligible
        assert winner.tolist() == [1, 0, 1]
        assert np.allclose(score, [0.5, 0.25, 0.0])

# tests/test_clustering.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd

from csf_scrnaseq.analysis.dimred import reduce_dimensionality
from csf_scrnaseq.analysis.clustering import perform_clustering, cluster_qc_summary


# --- Fixtures ---

@pytest.fixture(scope="module")
def adata_with_pca(scaled_adata) -> ad.AnnData:
    """Scaled data with 10 principal components over all genes."""
    adata = scaled_adata.copy()
    reduce_dimensionality(adata, n_comps=10, use_highly_variable=False, random_state=0)
    return adata


@pytest.fixture(scope="module")
def clustered_adata(adata_with_pca) -> ad.AnnData:
    adata = adata_with_pca.copy()
    perform_clustering(adata, n_pcs=10, n_neighbors=10, resolution=0.5, embedding=None)
    return adata


# --- Test Cases ---

def test_clustering_separates_outlier_population(clustered_adata):
    """Ten cells with a disjoint expression profile end up in their own cluster."""
    labels = clustered_adata.obs['leiden'].astype(str)
    is_outlier = clustered_adata.obs_names.str.contains('_O')
    outlier_labels = set(labels[is_outlier])
    assert len(outlier_labels) == 1
    assert outlier_labels.isdisjoint(set(labels[~is_outlier]))


def test_clustering_success_inplace(adata_with_pca):
    """Test basic clustering and t-SNE (default) execution with inplace=True."""
    adata = adata_with_pca.copy()
    key_added = 'leiden_test'

    result = perform_clustering(
        adata, n_pcs=8, n_neighbors=10, resolution=0.5, random_state=42,
        leiden_key_added=key_added, embedding='tsne', perplexity=10, inplace=True
    )

    assert result is None, "Should return None when inplace=True"
    assert 'connectivities' in adata.obsp
    assert adata.uns['neighbors']['params']['n_neighbors'] == 10
    assert isinstance(adata.obs[key_added].dtype, pd.CategoricalDtype)
    assert adata.obsm['X_tsne'].shape == (adata.n_obs, 2)
    assert 'X_umap' not in adata.obsm


def test_clustering_not_inplace_with_umap(adata_with_pca):
    adata_orig = adata_with_pca.copy()
    orig_obsm_keys = set(adata_orig.obsm.keys())

    adata_new = perform_clustering(adata_orig, n_pcs=10, n_neighbors=10, embedding='umap', inplace=False)

    assert isinstance(adata_new, ad.AnnData)
    assert 'leiden' in adata_new.obs
    assert adata_new.obsm['X_umap'].shape == (adata_new.n_obs, 2)
    assert set(adata_orig.obsm.keys()) == orig_obsm_keys
    assert 'leiden' not in adata_orig.obs


def test_clustering_perplexity_adjusted_for_small_data(adata_with_pca):
    adata = adata_with_pca[:40].copy()
    with pytest.warns(UserWarning, match="Adjusting perplexity to 13"):
        perform_clustering(adata, n_pcs=5, n_neighbors=10, embedding='tsne', perplexity=30)
    assert 'X_tsne' in adata.obsm


def test_clustering_reproducibility(adata_with_pca):
    """Test that random_state ensures reproducible clustering."""
    adata1 = perform_clustering(adata_with_pca, n_pcs=10, n_neighbors=10, random_state=3, embedding=None, inplace=False)
    adata2 = perform_clustering(adata_with_pca, n_pcs=10, n_neighbors=10, random_state=3, embedding=None, inplace=False)
    pd.testing.assert_series_equal(adata1.obs['leiden'], adata2.obs['leiden'], check_names=False)


def test_clustering_invalid_inputs(adata_with_pca):
    adata = adata_with_pca.copy()
    with pytest.raises(TypeError, match="Input 'adata' must be an AnnData object"):
        perform_clustering(np.zeros((3, 3)))  # type: ignore
    with pytest.raises(ValueError, match="exceeds the number of computed components"):
        perform_clustering(adata, n_pcs=50)
    with pytest.raises(ValueError, match="Argument 'n_neighbors' must be an integer greater than 1"):
        perform_clustering(adata, n_neighbors=1)
    with pytest.raises(ValueError, match="Argument 'resolution' must be a positive number"):
        perform_clustering(adata, resolution=0)
    with pytest.raises(ValueError, match="Argument 'embedding'"):
        perform_clustering(adata, embedding='pca')


def test_clustering_requires_pca(scaled_adata):
    with pytest.raises(KeyError, match="Representation 'X_pca' not found"):
        perform_clustering(scaled_adata.copy())


def test_cluster_qc_summary(clustered_adata):
    summary = cluster_qc_summary(clustered_adata)
    assert list(summary.columns) == [
        'n_cells', 'n_genes_median', 'n_genes_mean', 'percent_mito_median', 'percent_mito_mean'
    ]
    assert summary['n_cells'].sum() == clustered_adata.n_obs
    assert set(summary.index) == set(clustered_adata.obs['leiden'].astype(str))


def test_cluster_qc_summary_missing_key(adata_with_pca):
    with pytest.raises(KeyError, match="Cluster key 'leiden' not found"):
        cluster_qc_summary(adata_with_pca)

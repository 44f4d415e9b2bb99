# csf_scrnaseq/analysis/significance.py

import anndata as ad
import logging
import numpy as np
from scipy.stats import chi2_contingency

log = logging.getLogger(__name__)


def _pc_loadings(matrix: np.ndarray, n_pcs: int) -> np.ndarray:
    """Gene loadings (genes x n_pcs) of a cells x genes matrix."""
    centered = matrix - matrix.mean(axis=0, keepdims=True)
    _, _, vt = np.linalg.svd(centered, full_matrices=False)
    return vt[:n_pcs].T


def _empirical_pvals(observed: np.ndarray, null: np.ndarray) -> np.ndarray:
    """Fraction of null |loadings| strictly greater than each observed |loading|, per PC."""
    pvals = np.empty_like(observed, dtype=float)
    n_null = null.shape[0]
    for pc in range(observed.shape[1]):
        sorted_null = np.sort(null[:, pc])
        n_greater = n_null - np.searchsorted(sorted_null, observed[:, pc], side='right')
        pvals[:, pc] = n_greater / n_null
    return pvals


def _pc_score(gene_pvals: np.ndarray, score_thresh: float) -> float:
    """
    Two-proportion test: share of genes with p <= score_thresh against the
    share expected if all p-values were uniform.
    """
    n = gene_pvals.shape[0]
    observed = int(np.sum(gene_pvals <= score_thresh))
    expected = int(np.floor(n * score_thresh))
    if observed == 0 and expected == 0:
        return 1.0
    table = np.array([[observed, n - observed], [expected, n - expected]])
    _, pval, _, _ = chi2_contingency(table, correction=True)
    return float(pval)


def jackstraw(
    adata: ad.AnnData,
    n_pcs: int | None = None,
    num_replicate: int = 100,
    prop_freq: float = 0.01,
    score_thresh: float = 1e-5,
    random_state: int = 0,
    key_added: str = 'jackstraw'
) -> None:
    """
    Resampling test for the significance of each principal component.

    In every replicate a random `prop_freq` share of the variable genes
    (at least 3) is permuted independently across cells, the PCA is
    recomputed, and the loadings of the permuted genes are collected as a
    null distribution. Each gene's observed loading gets an empirical p-value
    per component, and each component a score from a two-proportion test of
    how many genes fall below `score_thresh` compared with the uniform
    expectation.

    Results are stored in adata.uns[key_added]:
        - 'genes': names of the genes tested
        - 'gene_pvals': (n_genes, n_pcs) empirical p-values
        - 'pc_pvals': (n_pcs,) component scores
        - 'params': the settings used

    Args:
        adata: Scaled data with adata.var['highly_variable'] (all genes are
               used if the flag is missing).
        n_pcs: Number of leading components to test. Defaults to the number
               stored in adata.obsm['X_pca'], or 20.
        num_replicate: Number of permutation replicates. Defaults to 100.
        prop_freq: Share of genes permuted per replicate. Defaults to 0.01.
        score_thresh: Gene p-value cutoff for the component score.
        random_state: Seed for the permutations.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        ValueError: For invalid parameters or too few genes/cells.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(num_replicate, int) or num_replicate <= 0:
        raise ValueError("Argument 'num_replicate' must be a positive integer.")
    if not 0 < prop_freq <= 1:
        raise ValueError("Argument 'prop_freq' must be in (0, 1].")

    if 'highly_variable' in adata.var:
        gene_idx = np.flatnonzero(adata.var['highly_variable'].to_numpy())
    else:
        gene_idx = np.arange(adata.n_vars)
    if gene_idx.size < 3:
        raise ValueError(f"Need at least 3 genes for the permutation test, got {gene_idx.size}.")

    if n_pcs is None:
        n_pcs = adata.obsm['X_pca'].shape[1] if 'X_pca' in adata.obsm else 20
    n_pcs = min(n_pcs, adata.n_obs - 1, gene_idx.size - 1)
    if n_pcs <= 0:
        raise ValueError(f"Not enough cells ({adata.n_obs}) or genes ({gene_idx.size}) to test any component.")

    X = adata.X[:, gene_idx]
    X = X.toarray() if hasattr(X, 'toarray') else np.asarray(X)
    X = X.astype(np.float64)

    n_genes = gene_idx.size
    n_perm = max(3, int(round(prop_freq * n_genes)))
    log.info(
        f"Running permutation test: {num_replicate} replicates, {n_perm} of {n_genes} genes "
        f"permuted per replicate, {n_pcs} components."
    )

    rng = np.random.default_rng(random_state)
    observed = np.abs(_pc_loadings(X, n_pcs))

    null_chunks = []
    for replicate in range(num_replicate):
        permuted_genes = rng.choice(n_genes, size=n_perm, replace=False)
        shuffled = X.copy()
        for j in permuted_genes:
            shuffled[:, j] = rng.permutation(shuffled[:, j])
        null_chunks.append(np.abs(_pc_loadings(shuffled, n_pcs)[permuted_genes]))
        if (replicate + 1) % 25 == 0:
            log.debug(f"Finished {replicate + 1}/{num_replicate} replicates.")
    null = np.vstack(null_chunks)

    gene_pvals = _empirical_pvals(observed, null)
    pc_pvals = np.array([_pc_score(gene_pvals[:, pc], score_thresh) for pc in range(n_pcs)])

    adata.uns[key_added] = {
        'genes': np.asarray(adata.var_names[gene_idx], dtype=str),
        'gene_pvals': gene_pvals,
        'pc_pvals': pc_pvals,
        'params': {
            'n_pcs': int(n_pcs),
            'num_replicate': int(num_replicate),
            'prop_freq': float(prop_freq),
            'score_thresh': float(score_thresh),
            'random_state': int(random_state),
        },
    }
    log.info(
        "Component p-values: "
        + ", ".join(f"PC{i + 1}={p:.2e}" for i, p in enumerate(pc_pvals))
    )


def significant_pcs(adata: ad.AnnData, alpha: float = 0.05, key: str = 'jackstraw') -> int:
    """Number of leading components whose permutation p-value is below `alpha`."""
    if key not in adata.uns:
        raise KeyError(f"'{key}' not found in adata.uns. Run jackstraw first.")
    pc_pvals = np.asarray(adata.uns[key]['pc_pvals'])
    above = np.flatnonzero(pc_pvals >= alpha)
    return int(above[0]) if above.size else int(pc_pvals.size)


def find_elbow(variance_ratio) -> int:
    """
    Elbow of an explained-variance curve: the component at the largest
    second difference. Returns a 1-based component count.
    """
    values = np.asarray(variance_ratio, dtype=float)
    if values.size < 3:
        return int(values.size)
    second_diff = np.diff(values, n=2)
    return int(np.argmax(second_diff)) + 2


def pca_elbow(adata: ad.AnnData, key_added: str = 'pca_elbow') -> int:
    """Stores and returns the elbow of adata.uns['pca']['variance_ratio']."""
    if 'pca' not in adata.uns or 'variance_ratio' not in adata.uns['pca']:
        raise KeyError("PCA variance ratio not found in adata.uns['pca']. Run reduce_dimensionality first.")
    elbow = find_elbow(adata.uns['pca']['variance_ratio'])
    adata.uns[key_added] = elbow
    log.info(f"Explained-variance elbow at PC {elbow}.")
    return elbow

# csf_scrnaseq/analysis/dimred.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd
import warnings

log = logging.getLogger(__name__)


def reduce_dimensionality(
    adata: ad.AnnData,
    n_comps: int = 20,
    use_highly_variable: bool = True,
    random_state: int = 0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Performs principal component analysis (PCA) on the variable genes.

    Uses scanpy.tl.pca. Stores PCA results in adata.obsm['X_pca'] and
    related info (variance, variance ratio, loadings) in adata.uns['pca']
    and adata.varm['PCs']. Assumes data has been scaled. When
    `use_highly_variable` is set and adata.var['highly_variable'] exists, only
    those genes enter the decomposition; the loadings of the other genes are
    zero (see `project_pca` for scores of every gene).

    Args:
        adata: The annotated data matrix (typically after scaling).
        n_comps: Number of principal components to compute. Defaults to 20.
                 Must be less than the smallest usable dimension.
        use_highly_variable: Restrict PCA to adata.var['highly_variable'].
        random_state: Random seed for the SVD solver. Defaults to 0.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData
        object with PCA results.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        ValueError: If `n_comps` is not a positive integer or cannot be adjusted.
        AttributeError: If `adata.X` is not present.
        RuntimeError: If the underlying scanpy PCA function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(n_comps, (int, np.integer)) or isinstance(n_comps, bool) or n_comps <= 0:
        raise ValueError("Argument 'n_comps' must be a positive integer.")
    if adata.X is None:
        raise AttributeError("Cannot perform PCA: AnnData object does not have a suitable '.X' attribute.")

    mask_var = None
    n_features = adata.n_vars
    if use_highly_variable and 'highly_variable' in adata.var:
        mask_var = 'highly_variable'
        n_features = int(adata.var['highly_variable'].sum())
        log.info(f"Restricting PCA to {n_features} variable genes.")
    elif use_highly_variable:
        log.warning("No 'highly_variable' annotation found; running PCA on all genes.")

    min_dim = min(adata.n_obs, n_features)
    if n_comps >= min_dim:
        adjusted_n_comps = min_dim - 1
        if adjusted_n_comps <= 0:
            raise ValueError(f"Cannot compute PCA. Input data has {adata.n_obs} cells and "
                             f"{n_features} usable genes; need at least 2 of each.")
        warning_message = (
            f"Requested n_comps ({n_comps}) >= smallest dimension ({min_dim}). "
            f"Adjusting n_comps to {adjusted_n_comps}."
        )
        warnings.warn(warning_message, UserWarning, stacklevel=2)
        log.warning(warning_message)
        n_comps = adjusted_n_comps

    log.info(f"Performing PCA with n_comps={n_comps}, random_state={random_state}...")
    adata_work = adata if inplace else adata.copy()

    try:
        sc.tl.pca(
            adata_work, n_comps=n_comps, svd_solver='arpack', mask_var=mask_var,
            random_state=random_state, zero_center=True, copy=False
        )
    except ValueError as ve:
        log.error(f"ValueError during PCA: {ve}", exc_info=True)
        raise ValueError(f"Input value error during PCA: {ve}") from ve
    except Exception as e:
        log.error(f"Unexpected error during PCA: {e}", exc_info=True)
        raise RuntimeError(f"Failed PCA: {e}") from e

    if 'X_pca' not in adata_work.obsm:
        raise RuntimeError("PCA calc finished but 'X_pca' not found.")
    log.info(f"PCA completed. Results in .obsm['X_pca'] {adata_work.obsm['X_pca'].shape}, .uns['pca'], .varm['PCs'].")

    if not inplace:
        return adata_work
    return None


def project_pca(adata: ad.AnnData, key_added: str = 'PCs_projected') -> None:
    """
    Scores every gene, including those left out of the PCA, against the
    cell embeddings (`X.T @ X_pca`). Stored in adata.varm[key_added].
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if 'X_pca' not in adata.obsm:
        raise KeyError("'X_pca' not found in adata.obsm. Run reduce_dimensionality first.")

    X = adata.X.toarray() if hasattr(adata.X, 'toarray') else np.asarray(adata.X)
    adata.varm[key_added] = (X.T @ adata.obsm['X_pca']).astype(np.float32)
    log.info(f"Projected {adata.n_vars} genes onto {adata.obsm['X_pca'].shape[1]} components "
             f"(.varm['{key_added}']).")


def top_loading_genes(
    adata: ad.AnnData,
    n_pcs: int = 5,
    n_genes: int = 5,
    projected: bool = False
) -> pd.DataFrame:
    """
    Lists the genes with the most positive and most negative loadings for the
    leading components. Returns a long table (pc, direction, rank, gene, loading).
    """
    key = 'PCs_projected' if projected else 'PCs'
    if key not in adata.varm:
        raise KeyError(f"'{key}' not found in adata.varm.")

    loadings = np.asarray(adata.varm[key])
    n_pcs = min(n_pcs, loadings.shape[1])
    if not projected and 'highly_variable' in adata.var:
        candidates = np.flatnonzero(adata.var['highly_variable'].to_numpy())
    else:
        candidates = np.arange(adata.n_vars)

    records = []
    for pc in range(n_pcs):
        values = loadings[candidates, pc]
        order = np.argsort(values)
        for direction, idx in (('positive', order[::-1][:n_genes]), ('negative', order[:n_genes])):
            for rank, i in enumerate(idx, start=1):
                records.append({
                    'pc': pc + 1,
                    'direction': direction,
                    'rank': rank,
                    'gene': adata.var_names[candidates[i]],
                    'loading': float(values[i]),
                })
    table = pd.DataFrame.from_records(records)
    for pc in range(1, n_pcs + 1):
        sub = table[table['pc'] == pc]
        log.info(
            f"PC_{pc} positive: {', '.join(sub.loc[sub['direction'] == 'positive', 'gene'])} | "
            f"negative: {', '.join(sub.loc[sub['direction'] == 'negative', 'gene'])}"
        )
    return table

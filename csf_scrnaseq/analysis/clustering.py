# csf_scrnaseq/analysis/clustering.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd
import warnings

log = logging.getLogger(__name__)

EMBEDDINGS = ('tsne', 'umap', 'both')


def _run_tsne(adata: ad.AnnData, n_pcs: int, perplexity: float, random_state: int) -> None:
    # Perplexity must stay well below the number of cells.
    max_perplexity = (adata.n_obs - 1) / 3
    if perplexity > max_perplexity:
        adjusted = max(1.0, float(np.floor(max_perplexity)))
        message = (f"Perplexity {perplexity} is too large for {adata.n_obs} cells. "
                   f"Adjusting perplexity to {adjusted}.")
        warnings.warn(message, UserWarning, stacklevel=3)
        log.warning(message)
        perplexity = adjusted
    log.info(f"Calculating t-SNE embedding from {n_pcs} PCs (perplexity={perplexity})...")
    sc.tl.tsne(adata, n_pcs=n_pcs, use_rep='X_pca', perplexity=perplexity, random_state=random_state)
    if 'X_tsne' not in adata.obsm:
        raise RuntimeError("scanpy.tl.tsne finished but 'X_tsne' not found in adata.obsm.")


def perform_clustering(
    adata: ad.AnnData,
    n_pcs: int = 10,
    n_neighbors: int = 30,
    resolution: float = 0.6,
    random_state: int = 0,
    leiden_key_added: str = 'leiden',
    embedding: str | None = 'tsne',
    perplexity: float = 30,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Computes the neighborhood graph on the leading PCs, performs Leiden
    clustering, and computes a 2-D layout for visualization.

    Uses scanpy.pp.neighbors, scanpy.tl.leiden, and scanpy.tl.tsne /
    scanpy.tl.umap. The layout is computed after clustering and never feeds
    the cluster assignment.

    Args:
        adata: The annotated data matrix (after PCA).
        n_pcs: Number of leading principal components used for the graph and
               the layout. Defaults to 10.
        n_neighbors: Number of neighbors for k-NN graph construction.
                     Defaults to 30.
        resolution: Leiden resolution; higher gives more, smaller clusters.
                    Defaults to 0.6.
        random_state: Seed for Leiden and the layout. Defaults to 0.
        leiden_key_added: adata.obs key for the cluster labels. Defaults to 'leiden'.
        embedding: 'tsne', 'umap', 'both', or None to skip the layout.
        perplexity: t-SNE perplexity. Reduced with a warning for small data.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData
        object with neighbors graph, clustering results, and embeddings.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If 'X_pca' is not found in `adata.obsm`.
        ValueError: If `n_pcs`, `n_neighbors`, `resolution` or `embedding` are invalid.
        RuntimeError: If the underlying scanpy functions fail.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if 'X_pca' not in adata.obsm:
        raise KeyError("Representation 'X_pca' not found in adata.obsm. Run dimensionality reduction first.")
    if not isinstance(n_pcs, (int, np.integer)) or n_pcs <= 0:
        raise ValueError("Argument 'n_pcs' must be a positive integer.")
    if n_pcs > adata.obsm['X_pca'].shape[1]:
        raise ValueError(
            f"Argument 'n_pcs' ({n_pcs}) exceeds the number of computed components "
            f"({adata.obsm['X_pca'].shape[1]})."
        )
    if not isinstance(n_neighbors, (int, np.integer)) or n_neighbors <= 1:
        raise ValueError("Argument 'n_neighbors' must be an integer greater than 1.")
    if not isinstance(resolution, (int, float)) or resolution <= 0:
        raise ValueError("Argument 'resolution' must be a positive number.")
    if embedding is not None and embedding not in EMBEDDINGS:
        raise ValueError(f"Argument 'embedding' must be one of {EMBEDDINGS} or None.")

    if n_neighbors >= adata.n_obs:
        adjusted = adata.n_obs - 1
        log.warning(f"n_neighbors ({n_neighbors}) >= number of cells ({adata.n_obs}). Using {adjusted}.")
        n_neighbors = adjusted

    log.info(
        f"Performing clustering on {n_pcs} PCs: n_neighbors={n_neighbors}, "
        f"resolution={resolution}, random_state={random_state}. Embedding: {embedding}."
    )

    adata_work = adata if inplace else adata.copy()

    try:
        # 1. Neighborhood graph on the chosen PCs
        sc.pp.neighbors(
            adata_work,
            n_neighbors=n_neighbors,
            n_pcs=n_pcs,
            use_rep='X_pca',
            random_state=random_state,
        )
        if 'connectivities' not in adata_work.obsp:
            raise RuntimeError("scanpy.pp.neighbors finished but 'connectivities' not found in adata.obsp.")

        # 2. Leiden community detection
        sc.tl.leiden(
            adata_work,
            resolution=resolution,
            random_state=random_state,
            key_added=leiden_key_added,
        )
        if leiden_key_added not in adata_work.obs:
            raise RuntimeError(f"scanpy.tl.leiden finished but '{leiden_key_added}' not found in adata.obs.")
        counts = adata_work.obs[leiden_key_added].value_counts()
        log.info(f"Found {len(counts)} clusters. Sizes:\n{counts.to_string()}")

        # 3. Visualization layout
        if embedding in ('tsne', 'both'):
            _run_tsne(adata_work, n_pcs=n_pcs, perplexity=perplexity, random_state=random_state)
        if embedding in ('umap', 'both'):
            log.info("Calculating UMAP embedding...")
            sc.tl.umap(adata_work, random_state=random_state)
            if 'X_umap' not in adata_work.obsm:
                raise RuntimeError("scanpy.tl.umap finished but 'X_umap' not found in adata.obsm.")
        if embedding is None:
            log.info("Skipping 2-D embedding as requested.")

    except RuntimeError:
        raise
    except Exception as e:
        log.error(f"An error occurred during neighbors calculation, clustering or embedding: {e}", exc_info=True)
        raise RuntimeError(f"Failed during clustering/embedding steps: {e}") from e

    if not inplace:
        return adata_work
    return None


def cluster_qc_summary(
    adata: ad.AnnData,
    cluster_key: str = 'leiden',
    qc_keys: list[str] | tuple[str, ...] = ('n_genes', 'percent_mito')
) -> pd.DataFrame:
    """
    Per-cluster cell counts and median/mean of the QC metrics. Together with
    the per-cluster violin plots this is what a reviewer looks at before
    choosing a cluster to drop.
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_key}' not found in adata.obs.")
    missing = [k for k in qc_keys if k not in adata.obs]
    if missing:
        raise KeyError(f"QC columns not found in adata.obs: {missing}")

    grouped = adata.obs.groupby(cluster_key, observed=True)
    summary = grouped[list(qc_keys)].agg(['median', 'mean'])
    summary.columns = [f"{metric}_{stat}" for metric, stat in summary.columns]
    summary.insert(0, 'n_cells', grouped.size())
    summary.index = summary.index.astype(str)
    summary.index.name = cluster_key
    return summary

# csf_scrnaseq/analysis/qc.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np

log = logging.getLogger(__name__)


def filter_genes_and_cells(
    adata: ad.AnnData,
    min_cells: int | None = 3,
    min_genes: int | None = 200,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Applies the object construction filter: keeps genes detected in at least
    `min_cells` cells and cells with at least `min_genes` detected genes.

    Removing cells can push a gene below `min_cells`, so both filters are
    re-applied until the shape no longer changes. Re-running on an already
    filtered object is therefore a no-op.

    Args:
        adata: The annotated data matrix (detection is read from .X; any
               value > 0 counts as detected).
        min_cells: Minimum number of cells a gene must be detected in.
                   Defaults to 3. None disables the gene filter.
        min_genes: Minimum number of detected genes per cell. Defaults to 200.
                   None disables the cell filter.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the filtered AnnData.

    Raises:
        TypeError: If input is not an AnnData object.
        ValueError: If thresholds are negative or no cells/genes survive.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    for name, value in (('min_cells', min_cells), ('min_genes', min_genes)):
        if value is not None and value < 0:
            raise ValueError(f"{name} ({value}) must be non-negative.")

    adata_work = adata if inplace else adata.copy()
    n_obs_start, n_vars_start = adata_work.shape
    log.info(
        f"Construction filter: genes in >= {min_cells} cells, cells with >= {min_genes} genes. "
        f"Starting shape: {adata_work.shape}"
    )

    while True:
        shape_before = adata_work.shape
        if min_cells is not None:
            sc.pp.filter_genes(adata_work, min_cells=min_cells)
        if min_genes is not None:
            sc.pp.filter_cells(adata_work, min_genes=min_genes)
        if adata_work.n_obs == 0 or adata_work.n_vars == 0:
            raise ValueError(
                f"No cells or genes left after construction filter "
                f"(min_cells={min_cells}, min_genes={min_genes})."
            )
        if adata_work.shape == shape_before:
            break

    log.info(
        f"Kept {adata_work.n_obs}/{n_obs_start} cells and "
        f"{adata_work.n_vars}/{n_vars_start} genes."
    )
    if not inplace:
        return adata_work
    return None


def calculate_qc_metrics(
    adata: ad.AnnData,
    mito_gene_prefix: str = "MT-",
    layer: str | None = "counts",
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Calculates per-cell QC metrics using scanpy.

    Adds the following to adata.obs:
        - 'n_genes': number of detected genes
        - 'n_counts': total expression
        - 'percent_mito': fraction (0-1) of the total attributable to genes
          whose symbol starts with `mito_gene_prefix`
    and adata.var['mt'].

    The metrics are computed from the un-normalized layer so that later
    normalization does not change them.

    Args:
        adata: The annotated data matrix.
        mito_gene_prefix: Prefix for mitochondrial genes. Defaults to "MT-".
        layer: Layer holding un-normalized values. Falls back to .X if the
               layer is absent. Defaults to 'counts'.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    adata_copy = adata if inplace else adata.copy()

    if layer is not None and layer not in adata_copy.layers:
        log.warning(f"Layer '{layer}' not found; computing QC metrics from adata.X.")
        layer = None

    adata_copy.var['mt'] = adata_copy.var_names.str.startswith(mito_gene_prefix)
    n_mt_genes = int(np.sum(adata_copy.var['mt']))
    if n_mt_genes == 0:
        log.warning(f"No mitochondrial genes found using prefix '{mito_gene_prefix}'. "
                    f"'percent_mito' will be zero for all cells.")
    else:
        log.info(f"Found {n_mt_genes} mitochondrial genes with prefix '{mito_gene_prefix}'.")

    try:
        sc.pp.calculate_qc_metrics(
            adata_copy,
            qc_vars=['mt'],
            percent_top=None,
            log1p=False,
            layer=layer,
            inplace=True
        )
    except Exception as e:
        log.error(f"Error calculating QC metrics: {e}", exc_info=True)
        raise RuntimeError(f"Failed to calculate QC metrics: {e}") from e

    adata_copy.obs['n_genes'] = adata_copy.obs['n_genes_by_counts'].astype(int)
    adata_copy.obs['n_counts'] = adata_copy.obs['total_counts'].astype(float)
    adata_copy.obs['percent_mito'] = (adata_copy.obs['pct_counts_mt'] / 100.0).fillna(0.0)
    log.info(
        f"QC metrics added. Median genes/cell: {adata_copy.obs['n_genes'].median():.0f}, "
        f"median mito fraction: {adata_copy.obs['percent_mito'].median():.4f}"
    )

    if not inplace:
        return adata_copy
    return None


def filter_cells_qc(
    adata: ad.AnnData,
    min_genes: int | None = 200,
    max_genes: int | None = 6000,
    max_pct_mito: float | None = 0.05,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Filters cells based on calculated QC metrics.

    Keeps cells with min_genes <= n_genes <= max_genes and
    percent_mito <= max_pct_mito. Assumes `calculate_qc_metrics` has been run.
    The metrics are not recomputed, so applying the same thresholds twice
    leaves the object unchanged.

    Args:
        adata: The annotated data matrix with QC metrics.
        min_genes: Minimum detected genes per cell. Defaults to 200. None disables.
        max_genes: Maximum detected genes per cell. Defaults to 6000. None disables.
        max_pct_mito: Maximum mitochondrial fraction (0-1). Defaults to 0.05.
                      None disables.
        inplace: Whether to subset the AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the filtered AnnData object.

    Raises:
        KeyError: If required QC columns are missing in adata.obs.
        ValueError: If thresholds are illogical or no cells survive.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    required_cols = []
    if min_genes is not None or max_genes is not None:
        required_cols.append('n_genes')
    if max_pct_mito is not None:
        required_cols.append('percent_mito')

    missing_cols = [col for col in required_cols if col not in adata.obs.columns]
    if missing_cols:
        raise KeyError(
            f"Missing required QC columns in adata.obs: {missing_cols}. "
            "Run calculate_qc_metrics first."
        )

    if min_genes is not None and max_genes is not None and min_genes > max_genes:
        raise ValueError(f"min_genes ({min_genes}) cannot be greater than max_genes ({max_genes}).")
    if max_pct_mito is not None and not 0 <= max_pct_mito <= 1:
        raise ValueError(f"max_pct_mito ({max_pct_mito}) must be a fraction between 0 and 1.")

    n_obs_start = adata.n_obs
    keep = np.ones(n_obs_start, dtype=bool)
    if min_genes is not None:
        keep &= (adata.obs['n_genes'] >= min_genes).to_numpy()
    if max_genes is not None:
        keep &= (adata.obs['n_genes'] <= max_genes).to_numpy()
    if max_pct_mito is not None:
        keep &= (adata.obs['percent_mito'] <= max_pct_mito).to_numpy()

    n_kept = int(keep.sum())
    log.info(
        f"QC filter (genes in [{min_genes}, {max_genes}], mito fraction <= {max_pct_mito}): "
        f"kept {n_kept} of {n_obs_start} cells."
    )
    if n_kept == 0:
        raise ValueError("All cells were removed by the QC filter. Check the thresholds.")

    if inplace:
        if n_kept < n_obs_start:
            adata._inplace_subset_obs(keep)
        return None
    return adata[keep, :].copy()


def remove_cluster(
    adata: ad.AnnData,
    cluster_id: str | int,
    cluster_key: str = 'leiden'
) -> ad.AnnData:
    """Returns a copy of `adata` without the cells assigned to `cluster_id`."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_key}' not found in adata.obs.")

    labels = adata.obs[cluster_key].astype(str)
    cluster_id = str(cluster_id)
    if cluster_id not in set(labels):
        raise KeyError(
            f"Cluster '{cluster_id}' not found in adata.obs['{cluster_key}']. "
            f"Available: {sorted(set(labels), key=lambda c: (len(c), c))}"
        )

    keep = (labels != cluster_id).to_numpy()
    if not keep.any():
        raise ValueError(f"Removing cluster '{cluster_id}' would leave no cells.")

    subset = adata[keep, :].copy()
    if hasattr(subset.obs[cluster_key], 'cat'):
        subset.obs[cluster_key] = subset.obs[cluster_key].cat.remove_unused_categories()
    log.info(f"Removed cluster '{cluster_id}' ({int((~keep).sum())} cells). {subset.n_obs} cells remain.")
    return subset

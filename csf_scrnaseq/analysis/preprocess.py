# csf_scrnaseq/analysis/preprocess.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
from scipy import sparse

log = logging.getLogger(__name__)


def normalize_log1p(
    adata: ad.AnnData,
    target_sum: float | None = 1e4, # Normalize to counts per 10,000 by default
    layer: str | None = "counts",
    lognorm_layer: str = "lognorm",
    set_raw: bool = True,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Normalizes each cell to `target_sum` and log1p transforms the data.

    The loaded matrix is a union of independently normalized sub-datasets,
    so every cell is brought to a common total before log transformation.
    Uses scanpy.pp.normalize_total and scanpy.pp.log1p. The result is stored
    in adata.X and adata.layers[lognorm_layer] and, if `set_raw`, frozen in
    adata.raw for marker discovery.

    Args:
        adata: The annotated data matrix (after QC filtering).
        target_sum: Total per cell after normalization. Defaults to 1e4.
        layer: Layer with the un-normalized values to start from. If None or
               missing, adata.X is used as is.
        lognorm_layer: Layer under which the result is stored.
        set_raw: Store the log-normalized matrix (all genes) in adata.raw.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Normalizing total per cell to target_sum={target_sum} and log1p transforming.")

    adata_copy = adata if inplace else adata.copy()

    if layer is not None:
        if layer in adata_copy.layers:
            adata_copy.X = adata_copy.layers[layer].copy()
        else:
            log.warning(f"Layer '{layer}' not found; normalizing adata.X as is.")

    x_min = adata_copy.X.min()
    if x_min < 0:
        log.warning("Data in adata.X contains negative values. "
                    "Normalization and log1p transformation assume non-negative input.")

    try:
        sc.pp.normalize_total(adata_copy, target_sum=target_sum, inplace=True)
        sc.pp.log1p(adata_copy)
    except Exception as e:
        log.error(f"Error during normalization/log1p: {e}", exc_info=True)
        raise RuntimeError(f"Failed to normalize/log1p data: {e}") from e

    adata_copy.layers[lognorm_layer] = adata_copy.X.copy()
    if set_raw:
        adata_copy.raw = adata_copy
        log.info(f"Stored log-normalized values in .raw. Shape: {adata_copy.raw.shape}")
    log.info("Normalization and log1p transformation complete.")

    if not inplace:
        return adata_copy
    return None


def select_variable_genes(
    adata: ad.AnnData,
    min_mean: float = 0.0125,
    max_mean: float = 3,
    min_disp: float = 0.5,
    flavor: str = 'seurat',
    layer: str | None = "lognorm",
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Flags variable genes by mean expression window and dispersion cutoff.

    Uses scanpy.pp.highly_variable_genes on log-normalized data. Genes are
    flagged in adata.var['highly_variable'] but the object is *not* subset:
    all retained genes are still scaled, only the flagged ones feed PCA.

    Args:
        adata: The annotated data matrix (after normalize_log1p).
        min_mean: Lower bound of the mean expression window. Defaults to 0.0125.
        max_mean: Upper bound of the mean expression window. Defaults to 3.
        min_disp: Minimum normalized dispersion. Defaults to 0.5.
        flavor: 'seurat' (log-dispersion within mean bins) or 'cell_ranger'.
        layer: Layer holding log-normalized values. None uses adata.X.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns an annotated copy.

    Raises:
        ValueError: If flavor is invalid or no gene passes the cutoffs.
        Exception: Re-raises other exceptions caught from scanpy.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if min_mean is not None and max_mean is not None and min_mean > max_mean:
        raise ValueError(f"min_mean ({min_mean}) cannot be greater than max_mean ({max_mean}).")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found. Run normalize_log1p first.")

    log.info(
        f"Selecting variable genes (flavor='{flavor}', mean in [{min_mean}, {max_mean}], "
        f"dispersion > {min_disp})."
    )

    adata_to_modify = adata if inplace else adata.copy()
    try:
        sc.pp.highly_variable_genes(
            adata_to_modify,
            flavor=flavor,
            min_mean=min_mean,
            max_mean=max_mean,
            min_disp=min_disp,
            layer=layer,
            subset=False,
            inplace=True
        )
    except Exception as e: # Catch any exception from scanpy
        log.error(f"Error during variable gene selection: {e}", exc_info=True)
        raise e

    n_hvgs = int(adata_to_modify.var['highly_variable'].sum())
    if n_hvgs == 0:
        raise ValueError("No variable genes passed the mean/dispersion cutoffs.")
    log.info(f"Identified {n_hvgs} variable genes out of {adata_to_modify.n_vars}.")

    if not inplace:
        return adata_to_modify
    return None


def scale_data(
    adata: ad.AnnData,
    regress_keys: list[str] | tuple[str, ...] | None = ('percent_mito',),
    max_value: float | None = 10,
    layer: str | None = "lognorm",
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Regresses nuisance covariates out of every gene and scales to unit variance.

    adata.X is reset from `layer` first so that repeated rounds always start
    from the log-normalized values of the current cell set. Each gene is
    replaced by its residual from a linear regression on `regress_keys`
    (scanpy.pp.regress_out), then centered and scaled (scanpy.pp.scale) and
    clipped at `max_value`.

    Raises:
        KeyError: If a covariate or the layer is missing.
        RuntimeError: If the underlying scanpy functions fail.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    regress_keys = list(regress_keys or [])
    missing = [key for key in regress_keys if key not in adata.obs]
    if missing:
        raise KeyError(f"Covariates not found in adata.obs: {missing}")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found. Run normalize_log1p first.")

    adata_work = adata if inplace else adata.copy()

    X = adata_work.layers[layer] if layer is not None else adata_work.X
    if sparse.issparse(X):
        X = X.toarray()
    adata_work.X = np.asarray(X, dtype=np.float32).copy()

    # A constant covariate makes the regression design singular.
    usable_keys = []
    for key in regress_keys:
        if np.nanstd(adata_work.obs[key].to_numpy(dtype=float)) == 0:
            log.warning(f"Covariate '{key}' is constant across cells; not regressing it out.")
        else:
            usable_keys.append(key)

    try:
        if usable_keys:
            log.info(f"Regressing out {usable_keys} from {adata_work.n_vars} genes...")
            sc.pp.regress_out(adata_work, keys=usable_keys)
        log.info(f"Scaling data (max_value={max_value})...")
        sc.pp.scale(adata_work, max_value=max_value)
    except Exception as e:
        log.error(f"Error during regression/scaling: {e}", exc_info=True)
        raise RuntimeError(f"Failed to scale data: {e}") from e

    log.info("Scaling complete.")
    if not inplace:
        return adata_work
    return None

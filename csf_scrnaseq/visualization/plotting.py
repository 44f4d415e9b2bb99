# csf_scrnaseq/visualization/plotting.py

import scanpy as sc
import anndata as ad
import logging
import os
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pathlib import Path

log = logging.getLogger(__name__)


# --- Helper to handle Scanpy saving ---
def _save_scanpy_plot(plot_func, plot_type, output_path, *args, dpi=150, **kwargs):
    """Internal helper to call a scanpy plot func and write the current figure."""
    kwargs.pop('show', None)
    try:
        plot_func(*args, show=False, **kwargs)
        fig = plt.gcf()
        fig.savefig(output_path, dpi=dpi, bbox_inches='tight')
        log.info(f"Saved {plot_type} plot to {output_path}")
    except Exception as e:
        msg = f"Failed during Scanpy plot generation/saving for {plot_type}: {e}"
        log.error(msg, exc_info=True)
        raise RuntimeError(msg) from e
    finally:
        plt.close('all')


def _output_path(output_dir: str, file_prefix: str, file_format: str) -> str:
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    return os.path.join(output_dir, f"{file_prefix}.{file_format}")


# --- Plotting Functions ---

def plot_embedding(
    adata: ad.AnnData,
    color_by: list[str],
    output_dir: str,
    basis: str = 'tsne',
    file_prefix: str = "tsne",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> None:
    """Generates and saves 2-D embedding plots (t-SNE or UMAP) colored by the given features."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if f"X_{basis}" not in adata.obsm: raise KeyError(f"Embedding key 'X_{basis}' not found")
    if not isinstance(color_by, list) or not color_by: raise ValueError("color_by must be non-empty list")
    if not output_dir: raise ValueError("output_dir must be provided")

    log.info(f"Generating {basis} plots colored by: {', '.join(color_by)}")
    # scanpy writes categories and colors into obs/uns; the caller's object stays untouched.
    adata = adata.copy()
    errors_occurred = []

    for feature in color_by:
        in_raw = adata.raw is not None and feature in adata.raw.var_names
        if feature not in adata.obs.columns and feature not in adata.var_names and not in_raw:
            log.warning(f"Feature '{feature}' not found. Skipping {basis} plot.")
            errors_occurred.append(feature)
            continue

        plot_kwargs = dict(kwargs)
        if feature in adata.obs.columns and not pd.api.types.is_numeric_dtype(adata.obs[feature]):
            # Categorical labels are easier to read on the clusters.
            plot_kwargs.setdefault('legend_loc', 'on data' if feature == 'leiden' else 'right margin')
            if not isinstance(adata.obs[feature].dtype, pd.CategoricalDtype):
                adata.obs[feature] = adata.obs[feature].astype(str).astype('category')

        safe_feature = feature.replace('/', '_').replace('\\', '_').replace('.', '_')
        output_path = _output_path(output_dir, f"{file_prefix}_{safe_feature}", file_format)
        try:
            _save_scanpy_plot(
                sc.pl.embedding, basis, output_path,
                adata, basis=basis, color=feature, dpi=dpi, **plot_kwargs
            )
        except Exception as e:
            errors_occurred.append(f"{feature}: {e}")

    if errors_occurred:
        log.warning(f"Some errors occurred during {basis} plotting for features: {errors_occurred}")


def plot_qc_violin(
    adata: ad.AnnData,
    keys: list[str],
    output_dir: str,
    file_prefix: str = "qc_violin",
    groupby: str | None = None,
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> None:
    """Generates and saves violin plots for QC metrics, optionally split by cluster."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if not isinstance(keys, list) or not keys: raise ValueError("keys must be non-empty list")
    if not output_dir: raise ValueError("output_dir must be provided")

    missing_keys = [k for k in keys if k not in adata.obs]
    if missing_keys:
        log.warning(f"QC keys not found in adata.obs: {missing_keys}. Skipping violin plots for these.")
        keys = [k for k in keys if k in adata.obs]
        if not keys: log.error("No valid QC keys found to plot."); return
    if groupby is not None and groupby not in adata.obs:
        log.warning(f"Group key '{groupby}' not found. Plotting without grouping.")
        groupby = None

    log.info(f"Generating QC violin plots for: {', '.join(keys)}"
             f"{f' grouped by {groupby}' if groupby else ''}")
    output_path = _output_path(output_dir, file_prefix, file_format)

    try:
        _save_scanpy_plot(
            sc.pl.violin, "violin", output_path,
            adata.copy(), keys=keys, groupby=groupby, rotation=90, dpi=dpi, **kwargs
        )
    except Exception as e:
        log.error(f"Failed to generate QC violin plot: {e}", exc_info=True)


def plot_pca_elbow(
    adata: ad.AnnData,
    output_dir: str,
    n_pcs: int = 20,
    file_prefix: str = "pca_elbow",
    file_format: str = "png",
    dpi: int = 150
) -> None:
    """Explained variance ratio per component (elbow plot)."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if 'pca' not in adata.uns: raise KeyError("PCA results 'pca' not found in adata.uns")
    if not output_dir: raise ValueError("output_dir must be provided")

    n_pcs = min(n_pcs, len(adata.uns['pca']['variance_ratio']))
    output_path = _output_path(output_dir, file_prefix, file_format)
    try:
        _save_scanpy_plot(sc.pl.pca_variance_ratio, "pca_variance_ratio", output_path,
                          adata, n_pcs=n_pcs, dpi=dpi)
    except Exception as e:
        log.error(f"Failed to generate PCA elbow plot: {e}", exc_info=True)


def plot_jackstraw(
    adata: ad.AnnData,
    output_dir: str,
    n_pcs: int = 20,
    key: str = 'jackstraw',
    file_prefix: str = "jackstraw",
    file_format: str = "png",
    dpi: int = 150
) -> None:
    """
    Observed vs uniform quantiles of the per-gene permutation p-values, one
    line per component. Components whose curve rises far above the diagonal
    carry real structure.
    """
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if key not in adata.uns: raise KeyError(f"Permutation test key '{key}' not found")
    if not output_dir: raise ValueError("output_dir must be provided")

    gene_pvals = np.asarray(adata.uns[key]['gene_pvals'])
    pc_pvals = np.asarray(adata.uns[key]['pc_pvals'])
    n_pcs = min(n_pcs, gene_pvals.shape[1])
    output_path = _output_path(output_dir, file_prefix, file_format)

    fig, ax = plt.subplots(figsize=(7, 6))
    try:
        uniform = np.linspace(0, 1, gene_pvals.shape[0] + 2)[1:-1]
        cmap = plt.get_cmap('tab20', n_pcs)
        for pc in range(n_pcs):
            ax.plot(uniform, np.sort(gene_pvals[:, pc]), color=cmap(pc),
                    label=f"PC {pc + 1}: p={pc_pvals[pc]:.1e}")
        ax.plot([0, 1], [0, 1], linestyle='--', color='grey')
        ax.set_xlabel('Theoretical [runif(1000)]')
        ax.set_ylabel('Empirical')
        ax.set_xlim(0, 0.1)
        ax.set_ylim(0, 0.3)
        ax.legend(fontsize='small', ncol=2, loc='lower right')
        fig.savefig(output_path, dpi=dpi, bbox_inches='tight')
        log.info(f"Saved jackstraw plot to {output_path}")
    except Exception as e:
        log.error(f"Failed to generate jackstraw plot: {e}", exc_info=True)
    finally:
        plt.close(fig)


def plot_marker_heatmap(
    adata: ad.AnnData,
    markers: pd.DataFrame,
    output_dir: str,
    groupby: str = 'leiden',
    file_prefix: str = "marker_heatmap",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> None:
    """Heatmap of the given marker genes (e.g. the top 10 per cluster) across cells grouped by cluster."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if not isinstance(markers, pd.DataFrame) or 'gene' not in markers: raise ValueError("markers must be a DataFrame with a 'gene' column")
    if groupby not in adata.obs: raise KeyError(f"Group key '{groupby}' not found")
    if not output_dir: raise ValueError("output_dir must be provided")

    use_raw = kwargs.pop('use_raw', adata.raw is not None)
    available = adata.raw.var_names if use_raw else adata.var_names
    genes = [g for g in dict.fromkeys(markers['gene'].astype(str)) if g in available]
    if not genes:
        log.warning("None of the marker genes are present in the data. Skipping heatmap.")
        return

    log.info(f"Generating marker heatmap for {len(genes)} genes.")
    output_path = _output_path(output_dir, file_prefix, file_format)
    try:
        _save_scanpy_plot(
            sc.pl.heatmap, "heatmap", output_path,
            adata, var_names=genes, groupby=groupby, use_raw=use_raw,
            show_gene_labels=True, dpi=dpi, **kwargs
        )
    except Exception as e:
        log.error(f"Failed to generate marker heatmap: {e}", exc_info=True)

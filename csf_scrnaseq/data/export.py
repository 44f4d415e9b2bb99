# csf_scrnaseq/data/export.py

import anndata as ad
import logging
import os
import pandas as pd
from pathlib import Path

log = logging.getLogger(__name__)


def _drop_none(mapping: dict) -> dict:
    cleaned = {}
    for key, value in mapping.items():
        if value is None:
            continue
        cleaned[key] = _drop_none(value) if isinstance(value, dict) else value
    return cleaned


def save_checkpoint(adata: ad.AnnData, path: str | Path, compression: str | None = "gzip") -> Path:
    """
    Writes the analysis object to an .h5ad checkpoint.

    h5ad cannot store None, so such entries are dropped from adata.uns on a
    copy before writing.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    to_write = adata.copy()
    to_write.uns = _drop_none(dict(to_write.uns))
    for col in to_write.obs.select_dtypes(include='category').columns:
        if len(to_write.obs[col].cat.categories) > 500:
            log.warning(f"Obs column '{col}' has >500 categories.")
    try:
        to_write.write_h5ad(path, compression=compression)
    except Exception as e:
        log.error(f"Failed to write checkpoint {path}: {e}", exc_info=True)
        raise
    log.info(f"Checkpoint saved to: {path} (shape {adata.shape})")
    return path


def load_checkpoint(path: str | Path) -> ad.AnnData:
    """Reads an .h5ad checkpoint written by `save_checkpoint`."""
    expanded_path = os.path.expanduser(str(path))
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"Checkpoint not found: {expanded_path}")
    adata = ad.read_h5ad(expanded_path)
    log.info(f"Loaded checkpoint {expanded_path}. Shape: {adata.shape}")
    return adata


def write_marker_table(markers: pd.DataFrame, path: str | Path) -> Path:
    """Writes the marker table as tab-separated text without the row index."""
    if not isinstance(markers, pd.DataFrame):
        raise TypeError("Input 'markers' must be a pandas DataFrame.")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    markers.to_csv(path, sep="\t", index=False)
    log.info(f"Wrote {len(markers)} marker rows to {path}")
    return path


def write_metadata(adata: ad.AnnData, path: str | Path) -> Path:
    """Writes adata.obs (all per-cell metadata, QC metrics, clusters) as tab-separated text."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.obs.to_csv(path, sep="\t", index=True, index_label="cell")
    log.info(f"Wrote metadata for {adata.n_obs} cells to {path}")
    return path

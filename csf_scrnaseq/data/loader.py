# csf_scrnaseq/data/loader.py

import anndata as ad
import logging
import numpy as np
import os
import pandas as pd
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_METADATA_COLUMNS = ['Twin', 'Case', 'Sample', 'index.sort', 'Clones']


def _check_path(path) -> str:
    if not isinstance(path, (str, Path)):
        raise TypeError(f"Expected path to be a string or Path, but got {type(path)}")
    expanded_path = os.path.expanduser(str(path))
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"Data file not found: {expanded_path}")
    return expanded_path


def load_expression_matrix(
    data_path: str | Path,
    log_transform: bool = True,
    sep: str = "\t",
    counts_layer: str = "counts"
) -> ad.AnnData:
    """
    Loads a delimited gene x cell expression table into an AnnData object.

    The file is expected to have cell barcodes in the header row and gene
    symbols in the first column. The table is transposed so that cells are
    observations and genes are variables.

    Args:
        data_path: Path to the delimited expression table (TPM values).
        log_transform: Apply a natural log(x + 1) to the values after loading.
                       Set to False if the file is already log-transformed.
                       Defaults to True.
        sep: Field delimiter. Defaults to tab.
        counts_layer: Layer under which the loaded (un-normalized) values are
                      kept for QC and normalization. Defaults to 'counts'.

    Returns:
        AnnData with the loaded values in .X and .layers[counts_layer], and
        the sample identity (barcode prefix before the first '_') in
        .obs['orig_ident'].

    Raises:
        FileNotFoundError: If the file does not exist.
        TypeError: If data_path is not a string or Path.
        ValueError: If the table is empty, non-numeric, or contains negative
                    values when log_transform=True.
    """
    expanded_path = _check_path(data_path)
    log.info(f"Loading expression matrix from: {expanded_path}")

    try:
        table = pd.read_csv(expanded_path, sep=sep, header=0, index_col=0)
    except Exception as e:
        log.error(f"Failed to read expression table {expanded_path}: {e}", exc_info=True)
        raise ValueError(f"An error occurred while reading the expression table: {e}") from e

    if table.empty:
        raise ValueError(f"Expression table {expanded_path} contains no genes or cells.")

    non_numeric = [col for col in table.columns if not pd.api.types.is_numeric_dtype(table[col])]
    if non_numeric:
        raise ValueError(
            f"Expression table has non-numeric columns: {non_numeric[:5]}"
            f"{' ...' if len(non_numeric) > 5 else ''}"
        )

    values = table.to_numpy(dtype=np.float32).T
    if log_transform:
        if np.nanmin(values) < 0:
            raise ValueError("Expression table contains negative values; cannot apply log(x + 1).")
        log.info("Applying log(x + 1) transform to the loaded values.")
        values = np.log1p(values)

    adata = ad.AnnData(
        X=values,
        obs=pd.DataFrame(index=table.columns.astype(str)),
        var=pd.DataFrame(index=table.index.astype(str)),
    )
    adata.var_names_make_unique()
    adata.obs_names_make_unique()
    adata.layers[counts_layer] = adata.X.copy()

    adata.obs['orig_ident'] = pd.Categorical(
        [name.split('_', 1)[0] for name in adata.obs_names]
    )
    log.info(f"Loaded expression matrix. Shape (cells x genes): {adata.shape}")
    log.info(f"Cells per sample identity:\n{adata.obs['orig_ident'].value_counts().to_string()}")
    return adata


def load_cell_metadata(
    metadata_path: str | Path,
    columns: list[str] | None = None
) -> pd.DataFrame:
    """
    Reads the per-cell metadata table (whitespace-delimited, header row,
    barcode in the first column).

    Raises:
        KeyError: If any of the expected columns is missing.
    """
    expanded_path = _check_path(metadata_path)
    columns = DEFAULT_METADATA_COLUMNS if columns is None else list(columns)
    log.info(f"Loading cell metadata from: {expanded_path}")

    try:
        metadata = pd.read_csv(expanded_path, sep=r"\s+", header=0, index_col=0)
    except Exception as e:
        log.error(f"Failed to read metadata table {expanded_path}: {e}", exc_info=True)
        raise ValueError(f"An error occurred while reading the metadata table: {e}") from e

    missing = [col for col in columns if col not in metadata.columns]
    if missing:
        raise KeyError(f"Metadata table is missing expected columns: {missing}")

    metadata.index = metadata.index.astype(str)
    log.info(f"Loaded metadata for {metadata.shape[0]} cells with columns {columns}.")
    return metadata[columns]


def add_cell_metadata(
    adata: ad.AnnData,
    metadata: pd.DataFrame,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Merges per-cell metadata into adata.obs by barcode.

    Cells without a metadata row get missing values; metadata rows for
    barcodes not present in adata are dropped.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(metadata, pd.DataFrame):
        raise TypeError("Input 'metadata' must be a pandas DataFrame.")

    adata_work = adata if inplace else adata.copy()

    aligned = metadata.reindex(adata_work.obs_names)
    n_missing = int(aligned.isna().all(axis=1).sum())
    n_unused = int((~metadata.index.isin(adata_work.obs_names)).sum())
    if n_missing:
        log.warning(f"{n_missing} cells have no metadata row.")
    if n_unused:
        log.info(f"Ignoring {n_unused} metadata rows for barcodes not in the expression matrix.")

    for col in aligned.columns:
        adata_work.obs[col] = aligned[col].values
    log.info(f"Added metadata columns to adata.obs: {list(aligned.columns)}")

    if not inplace:
        return adata_work
    return None

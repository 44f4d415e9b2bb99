# tests/conftest.py

import pytest
import numpy as np
import pandas as pd
import anndata as ad
import logging

from csf_scrnaseq.data.loader import load_expression_matrix, DEFAULT_METADATA_COLUMNS
from csf_scrnaseq.analysis.qc import filter_genes_and_cells, calculate_qc_metrics
from csf_scrnaseq.analysis.preprocess import normalize_log1p, scale_data
from csf_scrnaseq.analysis.refinement import RoundParams, run_refinement_round

logging.basicConfig(level=logging.WARNING)

N_POP_A = 45
N_POP_B = 45
N_OUTLIER = 10
N_SHARED_GENES = 150
N_OUTLIER_GENES = 30
MITO_GENES = ['MT-CO1', 'MT-ND1', 'MT-ATP6']

# Relaxed thresholds so the small synthetic data behaves like a real run.
RELAXED_ROUND = dict(
    min_genes=10, max_genes=None, max_pct_mito=None,
    hvg_min_mean=0.0, hvg_max_mean=20.0, hvg_min_disp=-10.0,
    n_comps=10, n_pcs=8, n_neighbors=10, resolution=0.5,
    jackstraw_replicates=3, embedding='tsne', perplexity=15,
)


def _make_tpm_table(seed: int = 0) -> pd.DataFrame:
    """
    Genes x cells TPM-like table: two related populations (A, B) sharing a
    gene set at different levels, a small outlier population that expresses a
    disjoint gene set, three mitochondrial genes and one gene ('RARE1')
    detected in only two outlier cells.
    """
    rng = np.random.default_rng(seed)
    n_cells = N_POP_A + N_POP_B + N_OUTLIER
    shared = [f"G{i}" for i in range(1, N_SHARED_GENES + 1)]
    outlier_genes = [f"OUT{i}" for i in range(1, N_OUTLIER_GENES + 1)]
    genes = shared + outlier_genes + ['RARE1'] + MITO_GENES

    base = rng.gamma(2.0, 10.0, size=N_SHARED_GENES) + 5
    lam_a = base.copy()
    lam_a[: N_SHARED_GENES // 2] *= 5
    lam_b = base.copy()
    lam_b[N_SHARED_GENES // 2:] *= 5

    values = np.zeros((len(genes), n_cells))
    values[:N_SHARED_GENES, :N_POP_A] = rng.poisson(lam_a[:, None], size=(N_SHARED_GENES, N_POP_A))
    values[:N_SHARED_GENES, N_POP_A:N_POP_A + N_POP_B] = rng.poisson(lam_b[:, None], size=(N_SHARED_GENES, N_POP_B))
    out_start = N_POP_A + N_POP_B
    values[N_SHARED_GENES:N_SHARED_GENES + N_OUTLIER_GENES, out_start:] = rng.poisson(
        60, size=(N_OUTLIER_GENES, N_OUTLIER)
    )
    rare_row = genes.index('RARE1')
    values[rare_row, out_start:out_start + 2] = 500

    mito_fraction = rng.uniform(0.0, 0.08, size=n_cells)
    other_total = values[:-len(MITO_GENES)].sum(axis=0)
    mito_total = mito_fraction / (1 - mito_fraction) * other_total
    values[-len(MITO_GENES):] = np.round(mito_total / len(MITO_GENES))[None, :] + 1

    barcodes = (
        [f"S1_A{i:03d}" for i in range(N_POP_A)]
        + [f"S2_B{i:03d}" for i in range(N_POP_B)]
        + [f"S1_O{i:03d}" for i in range(N_OUTLIER)]
    )
    return pd.DataFrame(values, index=genes, columns=barcodes)


@pytest.fixture(scope="session")
def tpm_table() -> pd.DataFrame:
    return _make_tpm_table()


@pytest.fixture(scope="session")
def matrix_file(tmp_path_factory, tpm_table) -> str:
    path = tmp_path_factory.mktemp("input") / "csf_tpm.tsv"
    tpm_table.to_csv(path, sep="\t")
    return str(path)


@pytest.fixture(scope="session")
def metadata_file(tmp_path_factory, tpm_table) -> str:
    rng = np.random.default_rng(1)
    cells = list(tpm_table.columns)
    metadata = pd.DataFrame({
        'Twin': [f"T{1 + (i % 2)}" for i in range(len(cells))],
        'Case': ['MS' if name.startswith('S1') else 'Control' for name in cells],
        'Sample': [name.split('_', 1)[0] for name in cells],
        'index.sort': rng.integers(0, 4, size=len(cells)),
        'Clones': rng.integers(1, 6, size=len(cells)),
    }, index=pd.Index(cells, name='cell'))
    path = tmp_path_factory.mktemp("input") / "metadata.txt"
    metadata[DEFAULT_METADATA_COLUMNS].to_csv(path, sep=" ")
    return str(path)


@pytest.fixture(scope="session")
def loaded_adata(matrix_file) -> ad.AnnData:
    """Loaded (log TPM) data with QC metrics, no filtering."""
    adata = load_expression_matrix(matrix_file)
    calculate_qc_metrics(adata, mito_gene_prefix="MT-")
    return adata


@pytest.fixture(scope="session")
def qc_adata(loaded_adata) -> ad.AnnData:
    """Construction filtered data with QC metrics, the input of a refinement round."""
    adata = loaded_adata.copy()
    filter_genes_and_cells(adata, min_cells=3, min_genes=10)
    calculate_qc_metrics(adata, mito_gene_prefix="MT-")
    return adata


@pytest.fixture(scope="session")
def scaled_adata(qc_adata) -> ad.AnnData:
    """Normalized, regressed and scaled data (all genes), ready for PCA."""
    adata = qc_adata.copy()
    normalize_log1p(adata)
    scale_data(adata, regress_keys=('percent_mito',))
    return adata


@pytest.fixture(scope="session")
def relaxed_params() -> RoundParams:
    return RoundParams(**RELAXED_ROUND)


@pytest.fixture(scope="session")
def round_one(qc_adata, relaxed_params):
    """First refinement round on the synthetic data, no cluster removed."""
    return run_refinement_round(qc_adata, relaxed_params, round_number=1)


@pytest.fixture(scope="session")
def outlier_cluster(round_one) -> str:
    """Cluster id holding the outlier population in the first round."""
    clustered = round_one.clustered
    labels = clustered.obs['leiden'].astype(str)
    return labels[clustered.obs_names.str.contains('_O')].mode().iloc[0]

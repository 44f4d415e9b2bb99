"""
Example script: one refinement round by hand, then the marker table.

The cluster dropped after the round is chosen by looking at the printed
per-cluster QC summary.
"""

import logging
import sys

from csf_scrnaseq.data.loader import load_expression_matrix, load_cell_metadata, add_cell_metadata
from csf_scrnaseq.analysis.qc import filter_genes_and_cells, calculate_qc_metrics
from csf_scrnaseq.analysis.refinement import DEFAULT_ROUNDS, run_refinement_round
from csf_scrnaseq.analysis.markers import find_marker_genes, marker_table, top_markers

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def main(matrix_path, metadata_path, remove=None):
    # Load data
    adata = load_expression_matrix(matrix_path)
    add_cell_metadata(adata, load_cell_metadata(metadata_path))

    # Construction filter and QC metrics
    filter_genes_and_cells(adata, min_cells=3, min_genes=200)
    calculate_qc_metrics(adata, mito_gene_prefix="MT-")

    # Round 1 with the default settings (mito <= 5 %, 10 PCs)
    params = DEFAULT_ROUNDS[0].with_overrides(remove_cluster=remove)
    result = run_refinement_round(adata, params, round_number=1)
    print(result.qc_summary)

    # Markers on what is left
    adata = result.next_input
    find_marker_genes(adata, groupby='leiden')
    markers = top_markers(marker_table(adata, groupby='leiden'), n=10)
    print(markers.groupby('cluster').head(2))

    # Save results
    adata.write_h5ad("round1.h5ad")


if __name__ == "__main__":
    main(*sys.argv[1:4])

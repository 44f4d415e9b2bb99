# csf_scrnaseq/workflow.py

import logging
import anndata as ad
from pathlib import Path
import scanpy as sc

# Import pipeline step functions
from .data.loader import load_expression_matrix, load_cell_metadata, add_cell_metadata
from .data.export import save_checkpoint, write_marker_table, write_metadata
from .analysis.qc import filter_genes_and_cells, calculate_qc_metrics
from .analysis.markers import find_marker_genes, marker_table, top_markers
from .analysis.refinement import RoundParams, run_refinement_round
from .visualization.plotting import (
    plot_embedding,
    plot_qc_violin,
    plot_pca_elbow,
    plot_jackstraw,
    plot_marker_heatmap
)

log = logging.getLogger(__name__)

# Fields of RoundParams shared by every round and set from the top-level parameters.
_SHARED_ROUND_FIELDS = {
    'min_genes': 'min_genes', 'max_genes': 'max_genes',
    'target_sum': 'target_sum', 'hvg_min_mean': 'hvg_min_mean',
    'hvg_max_mean': 'hvg_max_mean', 'hvg_min_disp': 'hvg_min_disp',
    'regress_keys': 'regress_keys', 'scale_max_value': 'scale_max_value',
    'n_comps': 'n_pca_comps', 'n_neighbors': 'n_neighbors',
    'resolution': 'leiden_resolution', 'embedding': 'embedding',
    'perplexity': 'perplexity', 'jackstraw_replicates': 'jackstraw_replicates',
    'jackstraw_prop': 'jackstraw_prop', 'random_state': 'random_seed',
}


def build_round_params(params) -> list[RoundParams]:
    """
    Materialises one RoundParams per round from the merged parameters.

    Precedence per field: shared top-level value < per-round list entry
    (mito_ceilings, n_pcs, remove_clusters) < entry in the `rounds` list.
    """
    n_rounds = int(params.n_rounds)
    if n_rounds < 1:
        raise ValueError("Argument 'n_rounds' must be at least 1.")

    shared = {}
    for field_name, attr in _SHARED_ROUND_FIELDS.items():
        if not hasattr(params, attr):
            continue
        value = getattr(params, attr)
        # None disables a QC bound or the embedding; elsewhere it means "use the default".
        if value is not None or field_name in ('min_genes', 'max_genes', 'embedding'):
            shared[field_name] = value
    if 'regress_keys' in shared:
        shared['regress_keys'] = tuple(shared['regress_keys'])

    per_round_lists = {
        'max_pct_mito': list(getattr(params, 'mito_ceilings', None) or []),
        'n_pcs': list(getattr(params, 'n_pcs', None) or []),
        'remove_cluster': list(getattr(params, 'remove_clusters', None) or []),
    }
    if len(per_round_lists['remove_cluster']) > n_rounds:
        raise ValueError(
            f"{len(per_round_lists['remove_cluster'])} clusters to remove given for only {n_rounds} rounds."
        )
    round_overrides = list(getattr(params, 'rounds', None) or [])

    rounds = []
    for i in range(n_rounds):
        values = dict(shared)
        for field_name, entries in per_round_lists.items():
            if entries:
                # The last ceiling / PC count carries over to later rounds.
                if field_name == 'remove_cluster':
                    values[field_name] = entries[i] if i < len(entries) else None
                else:
                    values[field_name] = entries[min(i, len(entries) - 1)]
        if i < len(round_overrides) and round_overrides[i]:
            unknown = set(round_overrides[i]) - set(RoundParams.__dataclass_fields__)
            if unknown:
                raise ValueError(f"Unknown round parameter(s) for round {i + 1}: {sorted(unknown)}")
            values.update(round_overrides[i])
        n_pcs = values.get('n_pcs', RoundParams.n_pcs)
        if values.get('n_comps', RoundParams.n_comps) < n_pcs:
            values['n_comps'] = n_pcs
        rounds.append(RoundParams(**values))
    return rounds


class RefinementWorkflow:
    """Orchestrates loading, the refinement rounds, and the final marker report."""

    def __init__(self, params):
        """Initializes the workflow orchestrator."""
        self.params = params
        self.adata = None
        self.results = []
        self.markers = None
        self.status = 'initialized'
        required_attrs = ['matrix_path', 'output_dir', 'output_prefix']
        for attr in required_attrs:
            if not getattr(self.params, attr, None):
                raise ValueError(f"Initialization failed: Missing required parameter '{attr}'.")
        self.output_dir = Path(self.params.output_dir)
        self.prefix = self.params.output_prefix
        self.round_params = build_round_params(params)
        self.cluster_key = self.round_params[-1].cluster_key

        log.info(f"RefinementWorkflow initialized with {len(self.round_params)} rounds.")
        log.debug(f"Workflow parameters: {vars(self.params)}")

    def run(self) -> ad.AnnData:
        """
        Executes the pipeline. Returns the final object, or the snapshot of
        the round that is waiting for a reviewer's decision.
        """
        log.info(f"Starting workflow run: {self.prefix}")
        try:
            self._setup_environment()          # Step 0
            self._load_data()                  # Step 1
            self._construction_filter()        # Step 2
            self._run_qc()                     # Step 3
            finished = self._run_rounds()      # Step 4
            if not finished:
                return self.adata
            self._find_markers()               # Step 5
            self._save_results()               # Step 6

            self.status = 'completed'
            log.info(f"Workflow run '{self.prefix}' completed successfully.")
            return self.adata

        except Exception as e:
            self.status = 'failed'
            log.error(f"Workflow run '{self.prefix}' failed: {e}", exc_info=True)
            raise

    def _setup_environment(self):
        """Sets up Scanpy settings and output directory."""
        log.debug("Setting up environment...")
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            sc.settings.figdir = str(self.output_dir)
            log.info(f"Output directory set to: {self.output_dir}")
        except OSError as e:
            log.error(f"Failed to create output directory '{self.output_dir}': {e}")
            raise

    def _load_data(self):
        log.info("Step 1: Loading expression matrix and cell metadata...")
        self.adata = load_expression_matrix(
            self.params.matrix_path, log_transform=self.params.log_transform
        )
        if getattr(self.params, 'metadata_path', None):
            metadata = load_cell_metadata(self.params.metadata_path, columns=self.params.metadata_columns)
            add_cell_metadata(self.adata, metadata, inplace=True)
        else:
            log.warning("No cell metadata file given. Plots colored by metadata columns will be skipped.")
        log.info(f"Loaded data shape: {self.adata.shape}.")

    def _construction_filter(self):
        if self.adata is None: raise RuntimeError("adata not loaded before filtering.")
        log.info("Step 2: Removing rarely detected genes and sparse cells...")
        filter_genes_and_cells(
            self.adata, min_cells=self.params.min_cells,
            min_genes=self.params.construct_min_genes, inplace=True
        )

    def _run_qc(self):
        if self.adata is None: raise RuntimeError("adata not loaded before running QC.")
        log.info("Step 3: Calculating QC metrics...")
        calculate_qc_metrics(self.adata, mito_gene_prefix=self.params.mito_prefix, inplace=True)

    def _run_rounds(self) -> bool:
        """Runs the refinement rounds. Returns False when a round awaits review."""
        current = self.adata
        n_rounds = len(self.round_params)
        for i, round_params in enumerate(self.round_params, start=1):
            log.info(f"Step 4.{i}: Refinement round {i} of {n_rounds}...")
            result = run_refinement_round(current, round_params, round_number=i)
            self.results.append(result)
            self._save_round(result)
            self._plot_round(result)

            if i < n_rounds and result.refined is None:
                self.adata = result.clustered
                self.status = 'awaiting_review'
                log.warning(
                    f"Round {i} finished without a cluster to remove. Review "
                    f"{self.prefix}_round{i}_cluster_qc.tsv and the round {i} plots, then re-run with "
                    f"--remove-clusters listing one cluster id per finished round (round {i} onwards)."
                )
                return False
            current = result.next_input

        self.adata = current
        return True

    def _save_round(self, result):
        if result.round_number == len(self.round_params) and result.refined is None:
            # Same object as <prefix>_final.h5ad
            log.debug(f"Skipping round {result.round_number} checkpoint; the final checkpoint holds it.")
        else:
            save_checkpoint(result.clustered, self.output_dir / f"{self.prefix}_round{result.round_number}.h5ad")
        qc_path = self.output_dir / f"{self.prefix}_round{result.round_number}_cluster_qc.tsv"
        result.qc_summary.to_csv(qc_path, sep="\t")
        log.info(f"Per-cluster QC summary written to {qc_path}")

    def _plot_round(self, result):
        if not self.params.run_plots:
            log.info("Skipping plots as requested.")
            return
        adata = result.clustered
        tag = f"{self.prefix}_round{result.round_number}"
        plot_kwargs = dict(output_dir=str(self.output_dir), file_format=self.params.plot_format, dpi=self.params.plot_dpi)

        plot_qc_violin(
            adata, keys=list(self.params.qc_violin_keys), groupby=result.params.cluster_key,
            file_prefix=f"{tag}_qc_violin", **plot_kwargs
        )
        plot_features = list(self.params.plot_color)
        if result.params.cluster_key not in plot_features:
            plot_features.insert(0, result.params.cluster_key)
        for basis in ('tsne', 'umap'):
            if f"X_{basis}" in adata.obsm:
                plot_embedding(adata, color_by=plot_features, basis=basis, file_prefix=f"{tag}_{basis}", **plot_kwargs)
        plot_pca_elbow(adata, n_pcs=result.params.n_comps, file_prefix=f"{tag}_pca_elbow", **plot_kwargs)
        if 'jackstraw' in adata.uns:
            plot_jackstraw(adata, file_prefix=f"{tag}_jackstraw", **plot_kwargs)

    def _find_markers(self):
        if self.adata is None: raise RuntimeError("adata not available.")
        if self.cluster_key not in self.adata.obs:
            raise KeyError(f"Cluster key '{self.cluster_key}' not found after the final round.")
        log.info("Step 5: Finding marker genes...")
        find_marker_genes(
            self.adata, groupby=self.cluster_key, method=self.params.dge_method,
            corr_method=self.params.dge_corr_method
        )
        self.markers = marker_table(
            self.adata, groupby=self.cluster_key, min_pct=self.params.min_pct,
            logfc_threshold=self.params.logfc_threshold,
            return_thresh=self.params.return_thresh, only_pos=True
        )
        top = top_markers(self.markers, n=self.params.n_top_markers)
        write_marker_table(top, self.output_dir / f"{self.prefix}_markers.tsv")
        for cluster, group in top.groupby('cluster', sort=False):
            log.info(f"Cluster {cluster} top markers: {', '.join(group['gene'].head(2))}")

        if self.params.run_plots and not top.empty:
            plot_marker_heatmap(
                self.adata, top, groupby=self.cluster_key, output_dir=str(self.output_dir),
                file_prefix=f"{self.prefix}_marker_heatmap",
                file_format=self.params.plot_format, dpi=self.params.plot_dpi
            )

    def _save_results(self):
        if self.adata is None: raise RuntimeError("No AnnData object to save.")
        log.info("Step 6: Saving metadata table and final AnnData object...")
        write_metadata(self.adata, self.output_dir / f"{self.prefix}_metadata.tsv")
        save_checkpoint(self.adata, self.output_dir / f"{self.prefix}_final.h5ad")

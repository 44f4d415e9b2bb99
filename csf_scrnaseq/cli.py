# csf_scrnaseq/cli.py

import argparse
import logging
import sys
from pathlib import Path
import yaml

from .data.loader import DEFAULT_METADATA_COLUMNS
from .workflow import RefinementWorkflow

log = logging.getLogger("csf_scrnaseq.cli")

DEFAULTS = {
    'output_prefix': "csf_scrnaseq",
    'log_transform': True,
    'metadata_columns': list(DEFAULT_METADATA_COLUMNS),
    # Construction filter and QC
    'min_cells': 3, 'construct_min_genes': 200,
    'mito_prefix': "MT-", 'min_genes': 200, 'max_genes': 6000,
    # Per-round settings
    'n_rounds': 3,
    'mito_ceilings': [0.05, 0.025, 0.025],
    'n_pcs': [10, 11, 11],
    'remove_clusters': [],
    'rounds': [],
    # Preprocessing
    'target_sum': 10000.0, 'hvg_min_mean': 0.0125, 'hvg_max_mean': 3.0, 'hvg_min_disp': 0.5,
    'regress_keys': ['percent_mito'], 'scale_max_value': 10.0,
    # PCA and component assessment
    'n_pca_comps': 20, 'jackstraw_replicates': 100, 'jackstraw_prop': 0.01,
    # Clustering
    'n_neighbors': 30, 'leiden_resolution': 0.6, 'embedding': 'tsne', 'perplexity': 30.0,
    # Markers
    'dge_method': "wilcoxon", 'dge_corr_method': "bonferroni",
    'min_pct': 0.25, 'logfc_threshold': 0.25, 'return_thresh': 0.01, 'n_top_markers': 10,
    # Plotting
    'run_plots': True,
    'plot_color': "leiden,index.sort,Clones",
    'qc_violin_keys': "n_genes,percent_mito",
    'plot_dpi': 150,
    'plot_format': "png",
    'random_seed': 0,
}

LIST_PARAMS = {
    'metadata_columns': str, 'mito_ceilings': float, 'n_pcs': int,
    'remove_clusters': str, 'regress_keys': str,
    'plot_color': str, 'qc_violin_keys': str,
}

NULLABLE_PARAMS = ['min_genes', 'max_genes', 'embedding', 'scale_max_value']


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


# --- Argument Parser Setup ---
def create_parser():
    parser = argparse.ArgumentParser(
        description="Iterative quality-refinement clustering of CSF single-cell RNA-seq (log TPM) data.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # --- Input/Output Arguments ---
    parser.add_argument("-m", "--matrix-path", type=str, required=True, help="Tab-separated genes x cells log(TPM+1)-ready matrix.")
    parser.add_argument("-M", "--metadata-path", type=str, default=None, help="Whitespace-delimited per-cell metadata table.")
    parser.add_argument("-o", "--output-dir", type=str, required=True, help="Directory for checkpoints, tables and plots.")
    parser.add_argument("-c", "--config", type=str, default=None, help="Path to a YAML configuration file with pipeline parameters.")
    parser.add_argument("--output-prefix", type=str, help="Prefix for output files. Overrides config.")
    parser.add_argument("--metadata-columns", type=str, help="Comma-separated metadata columns that must be present.")
    parser.add_argument("--log-transform", action=argparse.BooleanOptionalAction, help="Apply log(x+1) to the loaded matrix.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    # --- Step Arguments ---
    # Construction filter and QC
    parser.add_argument("--min-cells", type=int, help="Keep genes detected in at least this many cells.")
    parser.add_argument("--construct-min-genes", type=int, help="Initial filter: min detected genes per cell.")
    parser.add_argument("--mito-prefix", type=str, help="Mitochondrial gene prefix.")
    parser.add_argument("--min-genes", type=int, help="Round QC: min genes per cell.")
    parser.add_argument("--max-genes", type=int, help="Round QC: max genes per cell.")
    # Rounds
    parser.add_argument("--n-rounds", type=int, help="Number of refinement rounds.")
    parser.add_argument("--mito-ceilings", type=str, help="Comma-separated max mito fraction per round, e.g. 0.05,0.025.")
    parser.add_argument("--n-pcs", type=str, help="Comma-separated number of PCs used per round, e.g. 10,11,11.")
    parser.add_argument("--remove-clusters", type=str, help="Comma-separated cluster id to drop after each round, e.g. 3,6.")
    # Preprocessing
    parser.add_argument("--target-sum", type=float, help="Target sum for normalization.")
    parser.add_argument("--hvg-min-mean", type=float, help="Variable genes: min mean expression.")
    parser.add_argument("--hvg-max-mean", type=float, help="Variable genes: max mean expression.")
    parser.add_argument("--hvg-min-disp", type=float, help="Variable genes: min normalized dispersion.")
    parser.add_argument("--regress-keys", type=str, help="Comma-separated obs covariates regressed out before scaling.")
    parser.add_argument("--scale-max-value", type=float, help="Max value for scaling.")
    # PCA and component assessment
    parser.add_argument("--n-pca-comps", type=int, help="Number of PCA components computed.")
    parser.add_argument("--jackstraw-replicates", type=int, help="Permutation replicates (0 disables the test).")
    parser.add_argument("--jackstraw-prop", type=float, help="Fraction of genes permuted per replicate.")
    # Clustering
    parser.add_argument("--n-neighbors", type=int, help="Number of neighbors for graph.")
    parser.add_argument("--resolution", dest="leiden_resolution", type=float, help="Leiden resolution.")
    parser.add_argument("--embedding", type=str, choices=['tsne', 'umap', 'both', 'none'], help="2-D layout to compute.")
    parser.add_argument("--perplexity", type=float, help="t-SNE perplexity.")
    # Markers
    parser.add_argument("--dge-method", type=str, choices=['wilcoxon', 't-test', 'logreg'], help="DGE method.")
    parser.add_argument("--dge-corr-method", type=str, choices=['benjamini-hochberg', 'bonferroni'], help="DGE correction.")
    parser.add_argument("--min-pct", type=float, help="Min fraction of cluster cells expressing a marker.")
    parser.add_argument("--logfc-threshold", type=float, help="Min natural-log fold change of a marker.")
    parser.add_argument("--return-thresh", type=float, help="Only report markers with an unadjusted p-value below this.")
    parser.add_argument("--n-top-markers", type=int, help="Markers per cluster written to the marker table.")
    # Plotting
    parser.add_argument("--run-plots", action=argparse.BooleanOptionalAction, help="Generate plots.")
    parser.add_argument("--plot-color", type=str, help="Comma-separated features for embedding color.")
    parser.add_argument("--qc-violin-keys", type=str, help="Comma-separated obs keys for QC violin plot.")
    parser.add_argument("--plot-dpi", type=int, help="DPI for plots.")
    parser.add_argument("--plot-format", type=str, choices=['png', 'pdf', 'svg'], help="Plot file format.")
    # Other
    parser.add_argument("--random-seed", type=int, help="Random seed for reproducibility.")

    return parser


def _split_list(value, cast):
    if isinstance(value, str):
        value = [v.strip() for v in value.split(',') if v.strip()]
    elif not isinstance(value, (list, tuple)):
        # A single YAML scalar, e.g. `remove_clusters: 3`
        value = [value]
    return [cast(v) for v in value]


def _read_config(config_path) -> dict:
    """Flattens a sectioned YAML config; the `rounds` list is kept as is."""
    config_path = Path(config_path)
    if not config_path.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path, 'r') as f:
        config_yaml = yaml.safe_load(f) or {}
    if not isinstance(config_yaml, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping at the top level.")

    config_params = {}
    for section, params_in_section in config_yaml.items():
        if isinstance(params_in_section, dict):
            config_params.update(params_in_section)
        else:
            config_params[section] = params_in_section
    rounds = config_params.get('rounds')
    if rounds is not None and not (isinstance(rounds, list) and all(isinstance(r, dict) or r is None for r in rounds)):
        raise ValueError("Config entry 'rounds' must be a list of mappings.")
    return config_params


# --- Parameter Loading and Precedence ---
def load_and_merge_params(args: argparse.Namespace) -> argparse.Namespace:
    """Loads config file and merges parameters with CLI args and defaults."""
    config_params = {}
    if args.config:
        try:
            config_params = _read_config(args.config)
            log.info(f"Loaded parameters from config file: {args.config}")
        except yaml.YAMLError as e: log.error(f"Error parsing config file {args.config}: {e}"); sys.exit(1)
        except Exception as e: log.error(f"Error reading config file {args.config}: {e}", exc_info=True); sys.exit(1)

    unknown = set(config_params) - set(DEFAULTS) - {'metadata_path'}
    if unknown:
        log.warning(f"Ignoring unknown config parameters: {sorted(unknown)}")

    final_params = argparse.Namespace()
    cli_args_dict = vars(args)

    for key, default_value in DEFAULTS.items():
        param_value = default_value

        if key in config_params:
            config_value = config_params[key]
            param_value = None if str(config_value).lower() in ('null', 'none') else config_value

        cli_value = cli_args_dict.get(key)
        if cli_value is not None:
            param_value = cli_value

        if key in LIST_PARAMS:
            param_value = _split_list(param_value or [], LIST_PARAMS[key])
        elif param_value == '' or (key == 'embedding' and param_value == 'none'):
            param_value = None
        if param_value is None and key not in NULLABLE_PARAMS and key not in LIST_PARAMS:
            log.warning(f"Parameter '{key}' was set to null; using default {default_value!r}.")
            param_value = default_value

        setattr(final_params, key, param_value)

    final_params.matrix_path = args.matrix_path
    final_params.output_dir = args.output_dir
    final_params.metadata_path = args.metadata_path or config_params.get('metadata_path')

    log.debug(f"Final parameters after merge: {vars(final_params)}")
    return final_params


def run_pipeline(params):
    """Initializes and runs the RefinementWorkflow."""
    try:
        workflow = RefinementWorkflow(params)
        workflow.run()
        if workflow.status == 'awaiting_review':
            log.info("Workflow paused for cluster review. Re-run with --remove-clusters to continue.")
        else:
            log.info(f"Workflow finished. Results written to {params.output_dir}.")
        return workflow
    except Exception:
        log.critical("Pipeline execution failed. See previous logs for details.")
        sys.exit(1)


# --- Entry Point ---
def main(argv=None):
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    final_params = load_and_merge_params(args)
    run_pipeline(final_params)


if __name__ == "__main__":
    main()

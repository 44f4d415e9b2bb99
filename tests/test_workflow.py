# tests/test_workflow.py

import pytest
import matplotlib
matplotlib.use("Agg")
import pandas as pd

from csf_scrnaseq.cli import create_parser, load_and_merge_params
from csf_scrnaseq.workflow import RefinementWorkflow, build_round_params
from csf_scrnaseq.data.export import load_checkpoint
from csf_scrnaseq.analysis.markers import MARKER_COLUMNS

RELAXED_ARGS = [
    '--output-prefix', 'run',
    '--construct-min-genes', '10', '--min-genes', '10', '--max-genes', '1000',
    '--mito-ceilings', '1.0', '--n-pcs', '8', '--n-pca-comps', '10',
    '--hvg-min-mean=0', '--hvg-max-mean=20', '--hvg-min-disp=-10',
    '--n-neighbors', '10', '--resolution', '0.5', '--jackstraw-replicates', '2',
    '--n-rounds', '2',
]


def _params(argv):
    return load_and_merge_params(create_parser().parse_args(argv))


# --- Round parameters ---

def test_build_round_params_defaults():
    rounds = build_round_params(_params(['-m', 'm.tsv', '-o', 'out']))
    assert len(rounds) == 3
    assert [r.max_pct_mito for r in rounds] == [0.05, 0.025, 0.025]
    assert [r.n_pcs for r in rounds] == [10, 11, 11]
    assert all(r.remove_cluster is None for r in rounds)
    assert all(r.n_neighbors == 30 and r.resolution == 0.6 for r in rounds)


def test_build_round_params_lists_and_overrides():
    params = _params(['-m', 'm.tsv', '-o', 'out', '--remove-clusters', '3,6', '--mito-ceilings', '0.04'])
    params.rounds = [{'resolution': 1.0}, None, {'n_pcs': 25}]
    rounds = build_round_params(params)

    assert [r.remove_cluster for r in rounds] == ['3', '6', None]
    assert [r.max_pct_mito for r in rounds] == [0.04, 0.04, 0.04]
    assert [r.resolution for r in rounds] == [1.0, 0.6, 0.6]
    assert rounds[2].n_pcs == 25
    assert rounds[2].n_comps == 25


def test_build_round_params_errors():
    params = _params(['-m', 'm.tsv', '-o', 'out', '--remove-clusters', '1,2,3,4'])
    with pytest.raises(ValueError, match="clusters to remove"):
        build_round_params(params)
    params = _params(['-m', 'm.tsv', '-o', 'out'])
    params.rounds = [{'not_a_field': 1}]
    with pytest.raises(ValueError, match="Unknown round parameter"):
        build_round_params(params)
    params.rounds = []
    params.n_rounds = 0
    with pytest.raises(ValueError, match="at least 1"):
        build_round_params(params)


# --- End to end ---

def test_workflow_pauses_for_review(matrix_file, metadata_file, tmp_path):
    out = tmp_path / "paused"
    params = _params(['-m', matrix_file, '-M', metadata_file, '-o', str(out), '--no-run-plots'] + RELAXED_ARGS)
    workflow = RefinementWorkflow(params)

    adata = workflow.run()

    assert workflow.status == 'awaiting_review'
    assert len(workflow.results) == 1
    assert adata is workflow.results[0].clustered
    assert (out / "run_round1.h5ad").is_file()
    assert (out / "run_round1_cluster_qc.tsv").is_file()
    assert not (out / "run_round2.h5ad").exists()
    assert not (out / "run_final.h5ad").exists()
    assert 'Twin' in adata.obs


def test_workflow_full_run(matrix_file, metadata_file, tmp_path):
    out = tmp_path / "full"
    base = ['-m', matrix_file, '-M', metadata_file, '-o', str(out)] + RELAXED_ARGS

    # First pass stops after round 1; the reviewer picks the outlier cluster from its checkpoint.
    RefinementWorkflow(_params(base + ['--no-run-plots'])).run()
    round1 = load_checkpoint(out / "run_round1.h5ad")
    labels = round1.obs['leiden'].astype(str)
    outlier = labels[round1.obs_names.str.contains('_O')].mode().iloc[0]

    workflow = RefinementWorkflow(_params(base + ['--remove-clusters', outlier]))
    final = workflow.run()

    assert workflow.status == 'completed'
    assert [r.removed_cluster for r in workflow.results] == [outlier, None]
    assert not final.obs_names.str.contains('_O').any()
    assert not (out / "run_round2.h5ad").exists()
    for name in ("run_round1.h5ad", "run_round2_cluster_qc.tsv",
                 "run_markers.tsv", "run_metadata.tsv", "run_final.h5ad",
                 "run_round1_qc_violin.png", "run_round1_tsne_leiden.png",
                 "run_round2_pca_elbow.png", "run_round2_jackstraw.png"):
        assert (out / name).is_file(), name

    markers = pd.read_csv(out / "run_markers.tsv", sep="\t", dtype={'cluster': str})
    assert list(markers.columns) == MARKER_COLUMNS
    assert markers.groupby('cluster').size().max() <= 10

    metadata = pd.read_csv(out / "run_metadata.tsv", sep="\t", index_col=0)
    assert len(metadata) == final.n_obs
    assert {'leiden', 'Clones', 'percent_mito'}.issubset(metadata.columns)

    restored = load_checkpoint(out / "run_final.h5ad")
    assert list(restored.obs_names) == list(final.obs_names)


def test_workflow_missing_input_fails(tmp_path):
    params = _params(['-m', str(tmp_path / "missing.tsv"), '-o', str(tmp_path / "o")] + RELAXED_ARGS)
    workflow = RefinementWorkflow(params)
    with pytest.raises(FileNotFoundError):
        workflow.run()
    assert workflow.status == 'failed'


def test_workflow_requires_params():
    params = _params(['-m', 'm.tsv', '-o', 'out'])
    params.output_prefix = ''
    with pytest.raises(ValueError, match="output_prefix"):
        RefinementWorkflow(params)

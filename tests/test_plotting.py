# tests/test_plotting.py

import pytest
import matplotlib
matplotlib.use("Agg")
import pandas as pd
import logging

from csf_scrnaseq.visualization.plotting import (
    plot_embedding,
    plot_qc_violin,
    plot_pca_elbow,
    plot_jackstraw,
    plot_marker_heatmap
)


@pytest.fixture
def clustered(round_one):
    return round_one.clustered.copy()


# == Embedding Plot Tests ==
def test_plot_embedding_success(clustered, tmp_path):
    """Test successful generation of t-SNE plots for valid features."""
    output_dir = tmp_path / "plots"
    plot_embedding(clustered, color_by=['leiden', 'n_genes'], output_dir=str(output_dir), file_prefix="run_tsne")
    assert (output_dir / "run_tsne_leiden.png").is_file()
    assert (output_dir / "run_tsne_n_genes.png").is_file()


def test_plot_embedding_skips_missing_feature(clustered, tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        plot_embedding(clustered, color_by=['index.sort', 'leiden'], output_dir=str(tmp_path), file_prefix="t")
    assert "Feature 'index.sort' not found" in caplog.text
    assert not (tmp_path / "t_index_sort.png").exists()
    assert (tmp_path / "t_leiden.png").is_file()


def test_plot_embedding_leaves_input_unchanged(clustered, tmp_path):
    clustered.obs['donor'] = ['d1' if i % 2 else 'd2' for i in range(clustered.n_obs)]
    uns_keys = set(clustered.uns.keys())

    plot_embedding(clustered, color_by=['donor', 'leiden'], output_dir=str(tmp_path), file_prefix="t")
    plot_qc_violin(clustered, keys=['n_genes'], groupby='donor', output_dir=str(tmp_path))

    assert (tmp_path / "t_donor.png").is_file()
    assert not isinstance(clustered.obs['donor'].dtype, pd.CategoricalDtype)
    assert set(clustered.uns.keys()) == uns_keys


def test_plot_embedding_missing_basis(clustered, tmp_path):
    with pytest.raises(KeyError, match="Embedding key 'X_umap' not found"):
        plot_embedding(clustered, color_by=['leiden'], basis='umap', output_dir=str(tmp_path))


def test_plot_embedding_invalid_inputs(clustered, tmp_path):
    with pytest.raises(ValueError, match="color_by must be non-empty list"):
        plot_embedding(clustered, color_by=[], output_dir=str(tmp_path))
    with pytest.raises(TypeError, match="adata must be AnnData"):
        plot_embedding(None, color_by=['leiden'], output_dir=str(tmp_path))  # type: ignore


# == QC Violin Tests ==
def test_plot_qc_violin_by_cluster(clustered, tmp_path):
    plot_qc_violin(
        clustered, keys=['n_genes', 'percent_mito'], groupby='leiden',
        output_dir=str(tmp_path), file_prefix="run_round1_qc_violin", file_format="pdf"
    )
    assert (tmp_path / "run_round1_qc_violin.pdf").is_file()


def test_plot_qc_violin_missing_keys(clustered, tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        plot_qc_violin(clustered, keys=['not_there'], output_dir=str(tmp_path))
    assert "No valid QC keys found" in caplog.text
    assert not (tmp_path / "qc_violin.png").exists()


def test_plot_qc_violin_failure_is_logged(clustered, tmp_path, caplog, mocker):
    mocker.patch("csf_scrnaseq.visualization.plotting.sc.pl.violin", side_effect=RuntimeError("boom"))
    with caplog.at_level(logging.ERROR):
        plot_qc_violin(clustered, keys=['n_genes'], output_dir=str(tmp_path))
    assert "Failed to generate QC violin plot" in caplog.text
    assert not (tmp_path / "qc_violin.png").exists()


# == Component assessment plots ==
def test_plot_pca_elbow(clustered, tmp_path):
    plot_pca_elbow(clustered, output_dir=str(tmp_path), n_pcs=50, file_prefix="elbow")
    assert (tmp_path / "elbow.png").is_file()


def test_plot_jackstraw(clustered, tmp_path):
    plot_jackstraw(clustered, output_dir=str(tmp_path), file_prefix="js")
    assert (tmp_path / "js.png").is_file()


def test_plot_jackstraw_requires_results(clustered, tmp_path):
    del clustered.uns['jackstraw']
    with pytest.raises(KeyError, match="Permutation test key 'jackstraw' not found"):
        plot_jackstraw(clustered, output_dir=str(tmp_path))


# == Marker heatmap ==
def test_plot_marker_heatmap(clustered, tmp_path):
    markers = pd.DataFrame({'cluster': ['0', '1', '2', '2'], 'gene': ['G1', 'G100', 'OUT1', 'NOT_A_GENE']})
    plot_marker_heatmap(clustered, markers, output_dir=str(tmp_path), file_prefix="heat")
    assert (tmp_path / "heat.png").is_file()


def test_plot_marker_heatmap_no_known_genes(clustered, tmp_path, caplog):
    markers = pd.DataFrame({'cluster': ['0'], 'gene': ['NOT_A_GENE']})
    with caplog.at_level(logging.WARNING):
        plot_marker_heatmap(clustered, markers, output_dir=str(tmp_path), file_prefix="heat")
    assert "Skipping heatmap" in caplog.text
    assert not (tmp_path / "heat.png").exists()

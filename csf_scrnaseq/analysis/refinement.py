# csf_scrnaseq/analysis/refinement.py

"""
One round of the iterative quality refinement.

Each round filters cells, re-selects variable genes, re-scales, re-runs PCA,
assesses the components, clusters and embeds the remaining cells. The caller
reviews the per-cluster QC of the returned snapshot and names the cluster to
drop; the next round starts from the returned subset.
"""

import anndata as ad
import logging
import pandas as pd
from dataclasses import asdict, dataclass, field, replace

from .qc import filter_cells_qc, remove_cluster
from .preprocess import normalize_log1p, select_variable_genes, scale_data
from .dimred import reduce_dimensionality, project_pca, top_loading_genes
from .significance import jackstraw, significant_pcs, pca_elbow
from .clustering import perform_clustering, cluster_qc_summary

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoundParams:
    """Parameters of one refinement round. None disables a QC bound."""

    # QC filter
    min_genes: int | None = 200
    max_genes: int | None = 6000
    max_pct_mito: float | None = 0.05
    # Normalization and variable genes
    target_sum: float = 1e4
    hvg_min_mean: float = 0.0125
    hvg_max_mean: float = 3
    hvg_min_disp: float = 0.5
    regress_keys: tuple[str, ...] = ('percent_mito',)
    scale_max_value: float | None = 10
    # Reduction and clustering
    n_comps: int = 20
    n_pcs: int = 10
    n_neighbors: int = 30
    resolution: float = 0.6
    embedding: str | None = 'tsne'
    perplexity: float = 30
    jackstraw_replicates: int = 100
    jackstraw_prop: float = 0.01
    random_state: int = 0
    # Reviewer decision
    remove_cluster: str | None = None
    cluster_key: str = 'leiden'

    def __post_init__(self):
        if self.n_pcs <= 0 or self.n_comps <= 0:
            raise ValueError("n_pcs and n_comps must be positive.")
        if self.n_pcs > self.n_comps:
            raise ValueError(f"n_pcs ({self.n_pcs}) cannot exceed n_comps ({self.n_comps}).")
        if self.jackstraw_replicates < 0:
            raise ValueError("jackstraw_replicates must be >= 0.")
        if self.remove_cluster is not None:
            object.__setattr__(self, 'remove_cluster', str(self.remove_cluster))
        object.__setattr__(self, 'regress_keys', tuple(self.regress_keys or ()))

    def with_overrides(self, **overrides) -> "RoundParams":
        """Copy with the given fields replaced; None values are kept as given."""
        return replace(self, **overrides)

    def to_uns(self) -> dict:
        """Settings as an h5ad-serialisable dict (None entries dropped)."""
        params = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            params[key] = list(value) if isinstance(value, tuple) else value
        return params


DEFAULT_ROUNDS = (
    RoundParams(max_pct_mito=0.05, n_pcs=10),
    RoundParams(max_pct_mito=0.025, n_pcs=11),
    RoundParams(max_pct_mito=0.025, n_pcs=11),
)


@dataclass(frozen=True)
class RoundResult:
    """
    Output of one round.

    `clustered` is the snapshot before any cluster is removed (what gets
    checkpointed); `refined` is the subset the next round starts from, or
    None when no cluster was named for removal.
    """

    round_number: int
    params: RoundParams
    clustered: ad.AnnData
    refined: ad.AnnData | None = None
    removed_cluster: str | None = None
    qc_summary: pd.DataFrame = field(default_factory=pd.DataFrame)
    elbow: int | None = None
    n_significant_pcs: int | None = None

    @property
    def next_input(self) -> ad.AnnData:
        return self.refined if self.refined is not None else self.clustered


def run_refinement_round(
    adata: ad.AnnData,
    params: RoundParams,
    round_number: int = 1
) -> RoundResult:
    """
    Runs filter -> variable genes -> regress/scale -> PCA -> component
    assessment -> clustering/embedding on a copy of `adata`, then removes
    `params.remove_cluster` if one is given.

    The input object is not modified. Normalization runs only if the
    log-normalized layer is not there yet; it is per cell, so it does not
    need repeating after cells are removed.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If QC metrics are missing or the cluster to remove does
                  not exist.
        ValueError: If a stage leaves nothing to work with.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(params, RoundParams):
        raise TypeError("Argument 'params' must be a RoundParams instance.")

    log.info(f"=== Refinement round {round_number}: starting with {adata.n_obs} cells ===")
    work = adata.copy()

    if any(v is not None for v in (params.min_genes, params.max_genes, params.max_pct_mito)):
        filter_cells_qc(
            work, min_genes=params.min_genes, max_genes=params.max_genes,
            max_pct_mito=params.max_pct_mito, inplace=True
        )

    if 'lognorm' not in work.layers:
        normalize_log1p(work, target_sum=params.target_sum, inplace=True)

    select_variable_genes(
        work, min_mean=params.hvg_min_mean, max_mean=params.hvg_max_mean,
        min_disp=params.hvg_min_disp, inplace=True
    )
    scale_data(work, regress_keys=params.regress_keys, max_value=params.scale_max_value, inplace=True)

    reduce_dimensionality(work, n_comps=params.n_comps, random_state=params.random_state, inplace=True)
    project_pca(work)
    top_loading_genes(work, n_pcs=5, n_genes=5)

    n_significant = None
    if params.jackstraw_replicates:
        jackstraw(
            work, num_replicate=params.jackstraw_replicates,
            prop_freq=params.jackstraw_prop, random_state=params.random_state
        )
        n_significant = significant_pcs(work)
        log.info(f"{n_significant} leading components are significant at alpha=0.05.")
    elbow = pca_elbow(work)

    n_pcs = params.n_pcs
    n_available = work.obsm['X_pca'].shape[1]
    if n_pcs > n_available:
        log.warning(f"Requested {n_pcs} PCs but only {n_available} were computed. Using {n_available}.")
        n_pcs = n_available

    perform_clustering(
        work, n_pcs=n_pcs, n_neighbors=params.n_neighbors, resolution=params.resolution,
        random_state=params.random_state, leiden_key_added=params.cluster_key,
        embedding=params.embedding, perplexity=params.perplexity, inplace=True
    )
    qc_summary = cluster_qc_summary(work, cluster_key=params.cluster_key)
    log.info(f"Round {round_number} per-cluster QC:\n{qc_summary.to_string()}")

    work.uns['refinement'] = {'round': int(round_number), **params.to_uns()}

    refined = None
    if params.remove_cluster is not None:
        refined = remove_cluster(work, params.remove_cluster, cluster_key=params.cluster_key)
    else:
        log.info(f"Round {round_number}: no cluster selected for removal.")

    return RoundResult(
        round_number=round_number,
        params=params,
        clustered=work,
        refined=refined,
        removed_cluster=params.remove_cluster,
        qc_summary=qc_summary,
        elbow=elbow,
        n_significant_pcs=n_significant,
    )

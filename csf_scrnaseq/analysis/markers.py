# csf_scrnaseq/analysis/markers.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd

log = logging.getLogger(__name__)

MARKER_COLUMNS = ['cluster', 'gene', 'avg_logfc', 'pct_in', 'pct_out', 'pval', 'pval_adj']


def _cluster_sort_key(label: str):
    # "10" sorts after "9"
    return (len(label), label)


def find_marker_genes(
    adata: ad.AnnData,
    groupby: str = 'leiden',
    method: str = 'wilcoxon',
    corr_method: str = 'bonferroni',
    use_raw: bool | None = None,
    key_added: str = 'rank_genes_groups',
    **kwargs
) -> None:
    """
    Performs one-vs-rest differential expression for every group.

    Wraps scanpy.tl.rank_genes_groups over all genes. Results are stored
    inplace in `adata.uns[key_added]`.

    Args:
        adata: The annotated data matrix (must contain cluster labels in .obs).
        groupby: The key in `adata.obs` with the group labels. Defaults to 'leiden'.
        method: The statistical method ('wilcoxon', 't-test', 'logreg').
                Defaults to 'wilcoxon'.
        corr_method: Multiple testing correction ('bonferroni',
                     'benjamini-hochberg'). Defaults to 'bonferroni'.
        use_raw: Use `adata.raw` (log-normalized values). If None (default),
                 uses `.raw` when it exists.
        key_added: Key under which the results are stored in `adata.uns`.
        **kwargs: Passed to `sc.tl.rank_genes_groups`.

    Returns:
        None. Results are added to `adata.uns`.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `groupby` key is not found in `adata.obs`.
        ValueError: If `use_raw=True` but `adata.raw` is None, or fewer than
                    two groups exist.
        RuntimeError: If the underlying scanpy function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")
    if adata.obs[groupby].nunique() < 2:
        raise ValueError(f"Need at least two groups in '{groupby}' to find markers.")

    if use_raw is None:
        use_raw_calc = adata.raw is not None
        log.info(f"'use_raw' is None, automatically setting to {use_raw_calc} based on presence of adata.raw.")
    else:
        use_raw_calc = use_raw
        if use_raw_calc and adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")

    n_genes = adata.raw.n_vars if use_raw_calc else adata.n_vars
    if method == 'wilcoxon':
        # Rank-sum p-values with the tie correction of R's wilcox.test
        kwargs.setdefault('tie_correct', True)
    if not isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        adata.obs[groupby] = adata.obs[groupby].astype(str).astype('category')

    log.info(f"Finding marker genes using '{method}' for groups in '{groupby}' "
             f"(correction: '{corr_method}', {'adata.raw' if use_raw_calc else 'adata.X'}).")
    try:
        sc.tl.rank_genes_groups(
            adata,
            groupby=groupby,
            method=method,
            corr_method=corr_method,
            use_raw=use_raw_calc,
            key_added=key_added,
            n_genes=kwargs.pop('n_genes', n_genes),
            **kwargs
        )
        if key_added not in adata.uns:
            raise RuntimeError(f"sc.tl.rank_genes_groups finished but '{key_added}' not found in adata.uns.")
    except RuntimeError:
        raise
    except Exception as e:
        log.error(f"An error occurred during marker gene identification: {e}", exc_info=True)
        raise RuntimeError(f"Failed during marker gene identification: {e}") from e

    log.info(f"Marker gene analysis completed. Results stored in adata.uns['{key_added}'].")
    return None


def _expression_matrix(adata: ad.AnnData, use_raw: bool):
    source = adata.raw if use_raw else adata
    X = source.X
    X = X.toarray() if hasattr(X, 'toarray') else np.asarray(X)
    return X, source.var_names


def marker_table(
    adata: ad.AnnData,
    groupby: str = 'leiden',
    key: str = 'rank_genes_groups',
    min_pct: float = 0.25,
    logfc_threshold: float = 0.25,
    only_pos: bool = True,
    return_thresh: float = 0.01,
    use_raw: bool | None = None
) -> pd.DataFrame:
    """
    Builds the per-(cluster, gene) marker table from the rank test results.

    Effect size `avg_logfc` is the natural-log ratio of average expression,
    log(mean(expm1(x_in)) + 1) - log(mean(expm1(x_out)) + 1), computed on the
    log-normalized values. `pct_in` / `pct_out` are the fractions of cells
    with non-zero expression inside / outside the cluster.

    A gene is kept for a cluster when pct_in >= min_pct, its effect size
    exceeds logfc_threshold (avg_logfc itself for only_pos, its absolute
    value otherwise) and its unadjusted p-value is below return_thresh.

    Returns:
        DataFrame with columns cluster, gene, avg_logfc, pct_in, pct_out,
        pval, pval_adj sorted by cluster then decreasing avg_logfc.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if key not in adata.uns:
        raise KeyError(f"DGE key '{key}' not found in adata.uns. Run find_marker_genes first.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")
    if not 0 <= min_pct <= 1:
        raise ValueError(f"min_pct ({min_pct}) must be between 0 and 1.")
    if not 0 < return_thresh <= 1:
        raise ValueError(f"return_thresh ({return_thresh}) must be in (0, 1].")

    if use_raw is None:
        use_raw = bool(adata.uns[key].get('params', {}).get('use_raw', adata.raw is not None))
    X, var_names = _expression_matrix(adata, use_raw)
    labels = adata.obs[groupby].astype(str).to_numpy()
    expm1_X = np.expm1(X)

    frames = []
    for cluster in adata.uns[key]['names'].dtype.names:
        in_mask = labels == cluster
        if not in_mask.any() or in_mask.all():
            continue
        mean_in = np.log1p(expm1_X[in_mask].mean(axis=0))
        mean_out = np.log1p(expm1_X[~in_mask].mean(axis=0))
        stats = pd.DataFrame({
            'avg_logfc': mean_in - mean_out,
            'pct_in': (X[in_mask] > 0).mean(axis=0),
            'pct_out': (X[~in_mask] > 0).mean(axis=0),
        }, index=var_names)

        ranked = sc.get.rank_genes_groups_df(adata, group=cluster, key=key)
        ranked = ranked.drop_duplicates('names').set_index('names')
        stats = stats.join(ranked[['pvals', 'pvals_adj']], how='inner')
        stats = stats.rename(columns={'pvals': 'pval', 'pvals_adj': 'pval_adj'})

        effect = stats['avg_logfc'] if only_pos else stats['avg_logfc'].abs()
        keep = (
            (stats['pct_in'] >= min_pct)
            & (effect > logfc_threshold)
            & (stats['pval'] < return_thresh)
        )
        if only_pos:
            keep &= stats['avg_logfc'] > 0
        selected = stats[keep].copy()
        selected.insert(0, 'gene', selected.index.astype(str))
        selected.insert(0, 'cluster', cluster)
        frames.append(selected.reset_index(drop=True))
        log.debug(f"Cluster {cluster}: {len(selected)} markers pass the filters.")

    if not frames:
        return pd.DataFrame(columns=MARKER_COLUMNS)

    markers = pd.concat(frames, ignore_index=True)[MARKER_COLUMNS]
    order = sorted(markers['cluster'].unique(), key=_cluster_sort_key)
    markers['cluster'] = pd.Categorical(markers['cluster'], categories=order, ordered=True)
    markers = markers.sort_values(['cluster', 'avg_logfc'], ascending=[True, False], kind='stable')
    markers['cluster'] = markers['cluster'].astype(str)
    log.info(f"Marker table: {len(markers)} (cluster, gene) pairs across {markers['cluster'].nunique()} clusters "
             f"(min_pct={min_pct}, logfc_threshold={logfc_threshold}, return_thresh={return_thresh}, "
             f"only_pos={only_pos}).")
    return markers.reset_index(drop=True)


def top_markers(markers: pd.DataFrame, n: int = 10) -> pd.DataFrame:
    """Top `n` markers per cluster by avg_logfc."""
    if not isinstance(n, int) or n <= 0:
        raise ValueError("Argument 'n' must be a positive integer.")
    if markers.empty:
        return markers.copy()

    ranked = (
        markers.sort_values('avg_logfc', ascending=False, kind='stable')
        .groupby('cluster', sort=False)
        .head(n)
    )
    order = {c: i for i, c in enumerate(sorted(ranked['cluster'].astype(str).unique(), key=_cluster_sort_key))}
    ranked = ranked.assign(_order=ranked['cluster'].astype(str).map(order))
    return (
        ranked.sort_values(['_order', 'avg_logfc'], ascending=[True, False], kind='stable')
        .drop(columns='_order')
        .reset_index(drop=True)
    )

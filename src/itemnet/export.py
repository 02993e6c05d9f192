"""
Report output for itemnet results.

Builds pandas tables of the final items, removed items, iteration progress
and analysis summary, renders them as a human-readable text report, and
writes them as CSV files.
"""

import logging
import os
from pathlib import Path

import numpy as np
import pandas as pd

from .centrality_service import MEASURES

logger = logging.getLogger(__name__)


def _last_scores(result) -> dict[int, float]:
    scores = {}
    for record in result.loop.records:
        scores.update(record.scores)
    return scores


def generate_final_items_frame(result) -> pd.DataFrame:
    """One row per final item with its cluster and latest stability score."""
    matrix = result.final_matrix
    membership = result.structure.membership
    scores = _last_scores(result)
    community_sizes = pd.Series(membership).value_counts()

    rows = []
    for label in matrix.labels:
        original_index = matrix.original_index(label)
        community_id = membership[label]
        rows.append({
            'Item_Label': label,
            'Original_Index': original_index,
            'Item_Text': result.arena.phrase(original_index),
            'Community_ID': community_id,
            'Community_Size': int(community_sizes[community_id]),
            'Stability_Score': round(scores[original_index], 4) if original_index in scores else None,
        })
    return pd.DataFrame(rows)


def generate_removed_items_frame(result) -> pd.DataFrame:
    """Items dropped by UVA or bootEGA, in the order they were dropped."""
    config = result.config
    removed_data = []
    for record in result.loop.records:
        for original_index, wto_score in record.removed_by_uva:
            if original_index in result.final_matrix.indices:
                # restored by the degenerate-reduction fallback
                continue
            removed_data.append({
                'Original_Index': original_index,
                'Item_Text': result.arena.phrase(original_index),
                'Removal_Stage': 'UVA',
                'Removal_Reason': f'wTO >= {config.wto_threshold:.2f}',
                'Score': round(wto_score, 4),
                'Iteration': record.iteration,
            })
        for original_index in record.unstable:
            if original_index in result.final_matrix.indices:
                # kept as part of a provisional result
                continue
            removed_data.append({
                'Original_Index': original_index,
                'Item_Text': result.arena.phrase(original_index),
                'Removal_Stage': 'bootEGA',
                'Removal_Reason': f'Stability < {config.stability_threshold:.2f}',
                'Score': round(record.scores[original_index], 4),
                'Iteration': record.iteration,
            })
    return pd.DataFrame(
        removed_data,
        columns=['Original_Index', 'Item_Text', 'Removal_Stage', 'Removal_Reason', 'Score', 'Iteration'],
    )


def generate_iteration_frame(result) -> pd.DataFrame:
    """Progress counters of the stability loop, one row per iteration."""
    return pd.DataFrame(
        [
            {
                'Iteration': r.iteration,
                'Items_In': r.n_input,
                'Kept_By_UVA': r.n_after_reduction,
                'Stable': r.n_stable,
                'Unstable': r.n_unstable,
                'Degenerate': r.degenerate,
            }
            for r in result.loop.records
        ]
    )


def generate_analysis_summary_frame(result) -> pd.DataFrame:
    """Key metrics and parameters of the run as Metric/Value rows."""
    config = result.config
    scores = _last_scores(result)
    final_scores = [scores[i] for i in result.final_matrix.indices if i in scores]
    avg_stability = np.mean(final_scores) if final_scores else np.nan

    def rounded(value):
        return None if pd.isna(value) else round(float(value), 4)

    summary = {
        'Raw_Item_Count': result.n_raw_items,
        'Unique_Item_Count': len(result.arena),
        'Final_Stable_Count': result.final_matrix.n_items,
        'Iterations_Used': result.loop.iterations,
        'Converged': result.loop.converged,
        'Degenerate_Reduction': result.loop.degenerate,
        'Initial_Dimensions': result.initial_structure.n_dimensions,
        'Final_Dimensions': result.structure.n_dimensions,
        'TEFI_Score': rounded(result.structure.tefi),
        'NMI_Initial_vs_Final': rounded(result.nmi),
        'Average_Stability_Score': rounded(avg_stability),
        'Network_Method': config.network_method,
        'Embedding_Method': config.embedding_backend,
        'UVA_Threshold': config.wto_threshold,
        'bootEGA_Bootstrap_Samples': config.n_bootstrap,
        'bootEGA_Stability_Threshold': config.stability_threshold,
        'Max_Iterations': config.max_iterations,
        'Seed': config.seed,
    }
    if result.centrality is not None:
        for measure, cs in result.centrality.cs_coefficients.items():
            summary[f'CS_{measure}'] = cs
    return pd.DataFrame({'Metric': list(summary), 'Value': list(summary.values())})


def format_items_by_cluster(clusters: dict[int, list[str]]) -> str:
    """Numbered phrase list under a heading per cluster."""
    lines = []
    for community_id, phrases in clusters.items():
        heading = "Unassigned (isolated)" if community_id == -1 else f"Dimension {community_id + 1}"
        lines.append(f"{heading} ({len(phrases)} items)")
        lines.extend(f"  {i}. {phrase}" for i, phrase in enumerate(phrases, start=1))
    return "\n".join(lines)


def format_report(result) -> str:
    """Human-readable report of every result of a pipeline run."""
    sections = []

    title = "itemnet content-validity report"
    if result.provisional:
        title += " (PROVISIONAL)"
    sections.append(f"{title}\n{'=' * len(title)}")

    if result.loop.warning:
        sections.append(f"WARNING: {result.loop.warning}")
    if result.loop.degenerate:
        sections.append(
            "NOTE: redundancy reduction left fewer than two items; bootEGA was skipped in the last iteration."
        )

    sections.append("Summary\n-------\n" + generate_analysis_summary_frame(result).to_string(index=False))
    sections.append("Iterations\n----------\n" + generate_iteration_frame(result).to_string(index=False))

    removed = generate_removed_items_frame(result)
    if not removed.empty:
        sections.append(
            "Removed items\n-------------\n"
            + removed[['Removal_Stage', 'Iteration', 'Score', 'Item_Text']].to_string(index=False)
        )

    sections.append("Final items by dimension\n------------------------\n" + format_items_by_cluster(result.clusters))

    if result.centrality is not None:
        table = result.centrality.table().round(3)
        table.index = [
            result.arena.phrase(result.final_matrix.original_index(label)) for label in table.index
        ]
        cs = "\n".join(f"  {m}: {result.centrality.cs_coefficients[m]:.2f}" for m in MEASURES)
        sections.append(
            "Centrality (standardized, 95% bootstrap bands)\n"
            "----------------------------------------------\n"
            + table.to_string()
            + "\n\nCorrelation stability (CS) coefficients\n" + cs
        )
    else:
        sections.append("Centrality\n----------\nNot estimated: too few final items.")

    return "\n\n".join(sections) + "\n"


def write_csv_exports(result, directory: str | os.PathLike) -> dict[str, Path]:
    """Writes final, removed, iteration, summary and centrality tables as CSV.

    Returns:
        Mapping of table name to written path.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    frames = {
        'final_items': generate_final_items_frame(result),
        'removed_items': generate_removed_items_frame(result),
        'iterations': generate_iteration_frame(result),
        'analysis_summary': generate_analysis_summary_frame(result),
    }
    if result.centrality is not None:
        centrality = result.centrality.table()
        centrality.index.name = 'Item_Label'
        frames['centrality'] = centrality.reset_index()
        frames['case_drop'] = result.centrality.case_drop.reset_index()

    paths = {}
    for name, frame in frames.items():
        path = directory / f"{name}.csv"
        frame.to_csv(path, index=False)
        paths[name] = path
    logger.info("Wrote %d CSV files to %s", len(paths), directory)
    return paths

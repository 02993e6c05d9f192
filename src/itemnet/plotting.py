"""
Figures of a run: the item network coloured by community, the per-item
stability scores, and the standardized centrality profile. The plot_*
functions draw onto notebook axes; save_figures writes all of them as PNG.
"""

import logging
import os
from pathlib import Path

import matplotlib.pyplot as plt
import networkx as nx
import numpy as np

from .centrality_service import MEASURES, CentralityReport

logger = logging.getLogger(__name__)


def plot_network_with_communities(
    graph: nx.Graph,
    membership: dict[str | int, int],
    pos: dict | None = None,
    title: str = "Network with Communities",
    ax: plt.Axes | None = None,
    show_labels: bool = False,
) -> plt.Axes:
    """Plots the network with nodes colored by community membership.

    Args:
        graph: The networkx graph.
        membership: Node id to community id; -1 marks isolated nodes.
        pos: Optional node layout. If None, a seeded spring layout is used.
        title: Title for the plot.
        ax: Axes to plot on. If None, uses current axes.
        show_labels: If True, draw node labels.

    Returns:
        The axes drawn on.
    """
    if ax is None:
        ax = plt.gca()

    if pos is None:
        pos = nx.spring_layout(graph, seed=42)

    unique_communities = sorted(set(membership.values()))
    valid_communities = [c for c in unique_communities if c != -1]
    cmap = plt.get_cmap('viridis', max(1, len(valid_communities)))

    color_map = {comm_id: cmap(i) for i, comm_id in enumerate(valid_communities)}
    color_map[-1] = 'grey'

    node_colors = [color_map[membership.get(node, -1)] for node in graph.nodes()]
    edge_widths = [1 + 4 * abs(d.get('weight', 0.0)) for _, _, d in graph.edges(data=True)]

    nx.draw_networkx_nodes(graph, pos, node_color=node_colors, node_size=300, alpha=0.8, ax=ax)
    nx.draw_networkx_edges(graph, pos, alpha=0.5, edge_color='grey', width=edge_widths, ax=ax)
    if show_labels:
        nx.draw_networkx_labels(graph, pos, font_size=8, ax=ax)

    ax.set_title(title)
    ax.axis('off')

    legend_handles = []
    if -1 in unique_communities:
        legend_handles.append(plt.Line2D([0], [0], marker='o', color='w', label='Isolated',
                                         markerfacecolor='grey', markersize=10))
    for comm_id in valid_communities:
        legend_handles.append(plt.Line2D([0], [0], marker='o', color='w', label=f'Dimension {comm_id + 1}',
                                         markerfacecolor=color_map[comm_id], markersize=10))
    if legend_handles:
        ax.legend(handles=legend_handles, title="Communities", loc='best')
    return ax


def plot_item_stability(
    scores: dict[str, float],
    threshold: float = 0.75,
    ax: plt.Axes | None = None,
    title: str = "bootEGA Item Stability",
) -> plt.Axes:
    """Horizontal bars of item stability with the threshold marked."""
    if ax is None:
        ax = plt.gca()

    labels = list(scores)
    values = np.array([scores[label] for label in labels])
    colors = ['tab:blue' if v >= threshold else 'tab:red' for v in values]

    ax.barh(labels, values, color=colors)
    ax.axvline(threshold, color='black', linestyle='--', linewidth=1)
    ax.set_xlim(0, 1)
    ax.set_xlabel('Stability')
    ax.set_title(title)
    ax.invert_yaxis()
    return ax


def plot_centrality(report: CentralityReport, axes: np.ndarray | None = None) -> np.ndarray:
    """One panel per measure: standardized index with its bootstrap band."""
    if axes is None:
        _, axes = plt.subplots(1, len(MEASURES), figsize=(3 * len(MEASURES), 0.4 * len(report.item_labels) + 1.5),
                               sharey=True)
    axes = np.atleast_1d(axes)

    y = np.arange(len(report.item_labels))
    for ax, measure in zip(axes, MEASURES):
        values = report.standardized[measure].to_numpy()
        ax.hlines(y, report.lower[measure].to_numpy(), report.upper[measure].to_numpy(), color='lightgrey')
        ax.plot(values, y, 'o-', color='tab:blue')
        ax.axvline(0, color='black', linewidth=0.5)
        ax.set_title(f"{measure}\nCS = {report.cs_coefficients[measure]:.2f}")
    axes[0].set_yticks(y)
    axes[0].set_yticklabels(report.item_labels)
    axes[0].invert_yaxis()
    return axes


def save_figures(result, directory: str | os.PathLike) -> dict[str, Path]:
    """Writes the network, stability and centrality figures of a run as PNG.

    Figures with nothing to show (no bootEGA scores, no centrality) are skipped.

    Returns:
        Mapping of figure name to written path.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths = {}

    def save(name, fig):
        path = directory / f"{name}.png"
        fig.savefig(path, bbox_inches='tight')
        plt.close(fig)
        paths[name] = path

    fig, ax = plt.subplots(figsize=(8, 6))
    plot_network_with_communities(result.structure.graph, result.structure.membership, ax=ax,
                                  title="Final item network", show_labels=True)
    save('network', fig)

    if result.loop.stability is not None:
        scores = result.loop.stability.scores
        fig, ax = plt.subplots(figsize=(6, 0.3 * len(scores) + 1.5))
        plot_item_stability(scores, threshold=result.config.stability_threshold, ax=ax)
        save('item_stability', fig)

    if result.centrality is not None:
        axes = plot_centrality(result.centrality)
        save('centrality', axes[0].figure)

    logger.info("Wrote %d figures to %s", len(paths), directory)
    return paths

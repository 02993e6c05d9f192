import dataclasses
import warnings

import pandas as pd
import pytest

from itemnet.config import PipelineConfig
from itemnet.errors import NonConvergenceWarning
from itemnet.export import (
    format_items_by_cluster,
    format_report,
    generate_analysis_summary_frame,
    generate_final_items_frame,
    generate_iteration_frame,
    generate_removed_items_frame,
    write_csv_exports,
)
from itemnet.pipeline import IterationRecord, run_pipeline


@pytest.fixture
def result(topic_items, topic_provider):
    config = PipelineConfig(
        seed=2,
        n_bootstrap=8,
        max_iterations=2,
        n_lambda=10,
        wto_threshold=0.9,
        centrality_n_bootstrap=4,
        case_drop_n_bootstrap=2,
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NonConvergenceWarning)
        return run_pipeline(topic_items + [topic_items[2]], config=config, provider=topic_provider)


def test_final_items_frame(result):
    frame = generate_final_items_frame(result)
    assert len(frame) == result.final_matrix.n_items
    assert frame["Original_Index"].tolist() == list(result.final_matrix.indices)
    for _, row in frame.iterrows():
        assert row["Item_Text"] == result.arena.phrase(row["Original_Index"])


def test_removed_items_frame_accounts_for_every_dropped_item(result):
    frame = generate_removed_items_frame(result)
    assert set(frame.columns) >= {"Original_Index", "Removal_Stage", "Score", "Iteration"}
    assert set(frame["Removal_Stage"]) <= {"UVA", "bootEGA"}
    dropped = set(range(len(result.arena))) - set(result.final_matrix.indices)
    if not result.loop.degenerate:
        assert set(frame["Original_Index"]) == dropped


def test_iteration_frame(result):
    frame = generate_iteration_frame(result)
    assert frame["Iteration"].tolist() == list(range(1, result.loop.iterations + 1))
    assert frame["Items_In"].iloc[0] == len(result.arena)


def test_summary_frame(result):
    summary = generate_analysis_summary_frame(result).set_index("Metric")["Value"]
    assert summary["Raw_Item_Count"] == 9
    assert summary["Unique_Item_Count"] == 8
    assert summary["Final_Stable_Count"] == result.final_matrix.n_items
    assert summary["Converged"] == result.loop.converged
    if result.centrality is not None:
        assert "CS_Strength" in summary.index


def test_format_items_by_cluster():
    text = format_items_by_cluster({-1: ["alone"], 0: ["first", "second"]})
    assert "Unassigned (isolated) (1 items)" in text
    assert "Dimension 1 (2 items)" in text
    assert "  2. second" in text


def test_format_report_sections(result):
    report = format_report(result)
    assert "Summary" in report
    assert "Final items by dimension" in report
    for phrase in (result.arena.phrase(i) for i in result.final_matrix.indices):
        assert phrase in report


def test_format_report_marks_provisional_results(result):
    loop = dataclasses.replace(result.loop, converged=False, warning="did not converge")
    provisional = dataclasses.replace(result, loop=loop)
    report = format_report(provisional)
    assert "(PROVISIONAL)" in report.splitlines()[0]
    assert "WARNING: did not converge" in report


def test_write_csv_exports(result, tmp_path):
    paths = write_csv_exports(result, tmp_path / "out")
    expected = {"final_items", "removed_items", "iterations", "analysis_summary"}
    if result.centrality is not None:
        expected |= {"centrality", "case_drop"}
    assert set(paths) == expected
    final = pd.read_csv(paths["final_items"])
    assert len(final) == result.final_matrix.n_items


def _degenerate(result, removed_indices):
    record = IterationRecord(
        iteration=1,
        n_input=result.final_matrix.n_items,
        n_after_reduction=0,
        removed_by_uva=[(i, 1.0) for i in removed_indices],
        degenerate=True,
    )
    loop = dataclasses.replace(result.loop, converged=False, degenerate=True, warning=None, records=[record])
    return dataclasses.replace(result, loop=loop)


def test_degenerate_stop_is_not_provisional(result):
    degenerate = _degenerate(result, [])
    assert not degenerate.provisional
    report = format_report(degenerate)
    assert "PROVISIONAL" not in report.splitlines()[0]
    assert "NOTE: redundancy reduction left fewer than two items" in report


def test_removed_items_skip_items_restored_by_fallback(result):
    # Every item was logged as removed by UVA, then the input was kept as the final set
    kept = list(result.final_matrix.indices)
    dropped = sorted(set(range(len(result.arena))) - set(kept))
    frame = generate_removed_items_frame(_degenerate(result, kept + dropped))

    assert not set(frame["Original_Index"]) & set(kept)
    assert sorted(frame["Original_Index"]) == dropped

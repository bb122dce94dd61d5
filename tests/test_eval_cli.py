from __future__ import annotations

import json
from pathlib import Path

from grcrag.config import Settings
from grcrag.eval import main, run_evaluation

DATASET = Path(__file__).resolve().parents[1] / "evaluations" / "fixtures" / "sample.json"


def test_run_evaluation_writes_reports(tmp_path: Path):
    json_out = tmp_path / "report.json"
    markdown_out = tmp_path / "report.md"

    # a zero threshold keeps every document in the top 3, so each query hits
    result = run_evaluation(
        DATASET,
        top_k=3,
        threshold=0.0,
        settings=Settings(environment="test"),
        json_out=json_out,
        markdown_out=markdown_out,
    )

    assert result.total_queries == 3
    assert result.recall_at_k == 1.0
    assert 1 / 3 <= result.mean_reciprocal_rank <= 1.0
    assert result.no_evidence_rate == 0.0
    assert all(len(item["retrieved"]) == 3 for item in result.details)
    assert json.loads(json_out.read_text(encoding="utf-8"))["hits"] == 3
    assert markdown_out.read_text(encoding="utf-8").startswith("# GRC RAG Evaluation Report")


def test_irrelevant_document_counts_as_miss(tmp_path: Path):
    dataset = tmp_path / "dataset.json"
    dataset.write_text(
        json.dumps(
            {
                "documents": [{"id": "doc", "content": "Backups are tested every month."}],
                "queries": [{"question": "Who signs the contract?", "relevant_document_ids": ["other"]}],
            },
        ),
        encoding="utf-8",
    )
    result = run_evaluation(dataset, threshold=0.0, settings=Settings(environment="test"))
    assert result.hits == 0
    assert result.recall_at_k == 0.0
    assert result.details[0]["retrieved"] == ["doc"]


def test_main_exit_code_follows_thresholds(capsys):
    assert main(["--dataset", str(DATASET), "--threshold", "0", "--min-recall", "0", "--min-mrr", "0"]) == 0
    assert json.loads(capsys.readouterr().out)["total_queries"] == 3
    assert main(["--dataset", str(DATASET), "--threshold", "0", "--min-recall", "1.5"]) == 1

"""CLI for evaluating hybrid retrieval and answering quality."""

from __future__ import annotations

import argparse
import asyncio
import json
import statistics
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence
from uuid import uuid4

import chromadb

from grcrag.config import Settings, get_settings
from grcrag.embeddings import ChromaVectorIndex, EmbeddingConfig, HashEmbeddingBackend
from grcrag.ingestion import IngestionConfig, LangChainDocumentIngestor
from grcrag.models import AnswerOptions
from grcrag.retrieval.lexical import BM25ChunkStore
from grcrag.services.generation import NO_EVIDENCE_PROVIDER
from grcrag.services.query import build_engine

EVALUATION_TENANT = "evaluation"


@dataclass(frozen=True)
class DocumentFixture:
    id: str
    title: str
    content: str


@dataclass(frozen=True)
class QueryFixture:
    question: str
    relevant_document_ids: Sequence[str]
    expected_answer: str | None = None


@dataclass(frozen=True)
class EvaluationResult:
    total_queries: int
    hits: int
    recall_at_k: float
    mean_reciprocal_rank: float
    average_latency_ms: float
    no_evidence_rate: float
    details: List[dict]

    def to_dict(self) -> dict:
        return {
            "total_queries": self.total_queries,
            "hits": self.hits,
            "recall_at_k": self.recall_at_k,
            "mean_reciprocal_rank": self.mean_reciprocal_rank,
            "average_latency_ms": self.average_latency_ms,
            "no_evidence_rate": self.no_evidence_rate,
            "details": self.details,
        }


def load_dataset(path: Path) -> tuple[list[DocumentFixture], list[QueryFixture]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    documents = [
        DocumentFixture(id=item["id"], title=item.get("title", ""), content=item["content"])
        for item in data["documents"]
    ]
    queries = [
        QueryFixture(
            question=item["question"],
            relevant_document_ids=item.get("relevant_document_ids", []),
            expected_answer=item.get("expected_answer"),
        )
        for item in data["queries"]
    ]
    return documents, queries


async def _evaluate(
    documents: Sequence[DocumentFixture],
    queries: Sequence[QueryFixture],
    *,
    top_k: int,
    threshold: float,
    settings: Settings,
) -> EvaluationResult:
    # Hash embeddings, an ephemeral collection and no providers keep runs offline and repeatable.
    embedder = HashEmbeddingBackend(EmbeddingConfig(dim=settings.embedding_dim))
    vector_index = ChromaVectorIndex(f"evaluation-{uuid4().hex}", client=chromadb.EphemeralClient())
    chunk_store = BM25ChunkStore()
    ingestor = LangChainDocumentIngestor(
        IngestionConfig(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap),
    )
    engine = build_engine(
        settings.model_copy(update={"cache_enabled": False}),
        embedder=embedder,
        vector_index=vector_index,
        chunk_source=chunk_store,
        lexical_search=chunk_store,
        providers=[],
    )

    fixture_by_document: dict[str, str] = {}
    for fixture in documents:
        chunks = ingestor.ingest_text(fixture.content, tenant_id=EVALUATION_TENANT, filename=f"{fixture.id}.txt")
        chunk_store.add(chunks)
        fixture_by_document[chunks[0].document_id] = fixture.id
    await engine.ingest_for_answering(list(fixture_by_document), EVALUATION_TENANT)

    hits = 0
    no_evidence = 0
    reciprocal_ranks: list[float] = []
    latencies: list[float] = []
    details: list[dict] = []
    for query in queries:
        answer = await engine.answer(
            query.question,
            AnswerOptions(tenant_id=EVALUATION_TENANT, top_k=top_k, threshold=threshold),
        )
        latency_ms = answer.metadata.processing_ms or 0.0
        latencies.append(latency_ms)
        if answer.metadata.provider == NO_EVIDENCE_PROVIDER:
            no_evidence += 1
        retrieved_ids: list[str] = []
        for source in answer.sources:
            fixture_id = fixture_by_document.get(source.document_id)
            if fixture_id and fixture_id not in retrieved_ids:
                retrieved_ids.append(fixture_id)
        relevant_set = set(query.relevant_document_ids)
        rank = next((index for index, doc_id in enumerate(retrieved_ids, start=1) if doc_id in relevant_set), None)
        if rank is not None:
            hits += 1
            reciprocal_ranks.append(1 / rank)
        else:
            reciprocal_ranks.append(0.0)
        details.append(
            {
                "question": query.question,
                "retrieved": retrieved_ids,
                "relevant": list(query.relevant_document_ids),
                "latency_ms": latency_ms,
                "confidence": answer.confidence,
                "answer": answer.text,
            },
        )
    await engine.aclose()

    total = len(queries)
    return EvaluationResult(
        total_queries=total,
        hits=hits,
        recall_at_k=hits / total if total else 0.0,
        mean_reciprocal_rank=statistics.fmean(reciprocal_ranks) if reciprocal_ranks else 0.0,
        average_latency_ms=statistics.fmean(latencies) if latencies else 0.0,
        no_evidence_rate=no_evidence / total if total else 0.0,
        details=details,
    )


def run_evaluation(
    dataset_path: Path,
    *,
    top_k: int = 3,
    threshold: float | None = None,
    settings: Settings | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> EvaluationResult:
    settings = settings or get_settings()
    documents, queries = load_dataset(dataset_path)
    result = asyncio.run(
        _evaluate(
            documents,
            queries,
            top_k=top_k,
            threshold=settings.relevance_threshold if threshold is None else threshold,
            settings=settings,
        ),
    )
    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: EvaluationResult) -> str:
    lines = [
        "# GRC RAG Evaluation Report",
        "",
        f"- Total queries: {result.total_queries}",
        f"- Hits: {result.hits}",
        f"- Recall@k: {result.recall_at_k:.2f}",
        f"- MRR: {result.mean_reciprocal_rank:.2f}",
        f"- No-evidence rate: {result.no_evidence_rate:.2f}",
        f"- Avg latency (ms): {result.average_latency_ms:.2f}",
        "",
        "| Question | Retrieved | Relevant |",
        "| --- | --- | --- |",
    ]
    for item in result.details:
        retrieved = ", ".join(item["retrieved"]) if item["retrieved"] else "-"
        relevant = ", ".join(item["relevant"]) if item["relevant"] else "-"
        lines.append(f"| {item['question']} | {retrieved} | {relevant} |")
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate hybrid retrieval and answering quality.")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=Path("evaluations/fixtures/sample.json"),
        help="Path to evaluation dataset JSON file.",
    )
    parser.add_argument("--top-k", type=int, default=3, help="Number of results used as evidence")
    parser.add_argument("--threshold", type=float, default=None, help="Override the relevance threshold")
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--min-recall", type=float, default=None, help="Override recall threshold")
    parser.add_argument("--min-mrr", type=float, default=None, help="Override MRR threshold")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    min_recall = args.min_recall if args.min_recall is not None else settings.evaluation_min_recall
    min_mrr = args.min_mrr if args.min_mrr is not None else settings.evaluation_min_mrr

    result = run_evaluation(
        args.dataset,
        top_k=args.top_k,
        threshold=args.threshold,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))

    if result.recall_at_k < min_recall or result.mean_reciprocal_rank < min_mrr:
        print(
            f"Evaluation failed thresholds (recall {result.recall_at_k:.2f} vs {min_recall}, "
            f"MRR {result.mean_reciprocal_rank:.2f} vs {min_mrr})",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())

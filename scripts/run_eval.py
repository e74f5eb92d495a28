"""Run a question set against a live Grounded Chat server.

Usage:
    1. Start the server:   grounded-chat
    2. Run evaluation:     python scripts/run_eval.py [--base-url URL] [--dataset PATH] [--output PATH]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

import httpx

DEFAULT_BASE_URL = "http://localhost:8787"
DEFAULT_TIMEOUT = 120.0
DEFAULT_CONCURRENCY = 3
DATASET_PATH = Path(__file__).parent.parent / "tests" / "fixtures" / "eval_questions.json"


@dataclass
class EvalResult:
    case_id: str
    question: str
    answer: str = ""
    documents: int = 0
    fallback_reason: str | None = None
    coverage: float | None = None
    refused: bool = False
    citations: int = 0
    latency_ms: float = 0.0
    keywords_missing: list[str] = field(default_factory=list)
    error: str | None = None


def load_dataset(path: Path) -> list[dict]:
    with open(path) as f:
        return json.load(f)


async def run_case(client: httpx.AsyncClient, case: dict, semaphore: asyncio.Semaphore) -> EvalResult:
    async with semaphore:
        result = EvalResult(case_id=case["id"], question=case["question"])
        start = time.monotonic()
        try:
            response = await client.post(
                "/chat",
                json={"messages": [{"role": "user", "content": case["question"]}]},
            )
            response.raise_for_status()
            data = response.json()
        except Exception as e:
            result.error = str(e)
            return result

        result.latency_ms = (time.monotonic() - start) * 1000
        metadata = data.get("metadata", {})
        retrieval = metadata.get("retrieval") or {}
        critic = metadata.get("critic_report") or {}
        result.answer = data.get("answer", "")
        result.documents = retrieval.get("documents", 0)
        result.fallback_reason = retrieval.get("fallbackReason")
        result.coverage = critic.get("coverage")
        result.refused = bool(metadata.get("refused"))
        result.citations = len(data.get("citations", []))
        answer_lower = result.answer.lower()
        result.keywords_missing = [kw for kw in case.get("expected_keywords", []) if kw.lower() not in answer_lower]
        return result


def summarize(results: list[EvalResult]) -> dict:
    valid = [r for r in results if r.error is None]
    coverages = [r.coverage for r in valid if r.coverage is not None]
    return {
        "total_cases": len(results),
        "error_count": len(results) - len(valid),
        "refusal_rate": sum(r.refused for r in valid) / len(valid) if valid else 0.0,
        "avg_coverage": sum(coverages) / len(coverages) if coverages else 0.0,
        "avg_documents": sum(r.documents for r in valid) / len(valid) if valid else 0.0,
        "avg_latency_ms": sum(r.latency_ms for r in valid) / len(valid) if valid else 0.0,
    }


def print_report(results: list[EvalResult], metrics: dict) -> None:
    print(f"\n{'=' * 64}\n  EVALUATION SUMMARY\n{'=' * 64}")
    print(f"  Total cases:     {metrics['total_cases']}")
    print(f"  Errors:          {metrics['error_count']}")
    print(f"  Refusal rate:    {metrics['refusal_rate']:.1%}")
    print(f"  Avg coverage:    {metrics['avg_coverage']:.3f}")
    print(f"  Avg documents:   {metrics['avg_documents']:.1f}")
    print(f"  Avg latency:     {metrics['avg_latency_ms']:.0f} ms")
    print(f"\n{'=' * 64}\n  PER-QUESTION DIAGNOSTICS\n{'=' * 64}")
    for r in results:
        if r.error:
            print(f"  [ERROR] {r.case_id:<12} {r.error}")
            continue
        status = "REFUSED" if r.refused else "OK"
        coverage = f"{r.coverage:.2f}" if r.coverage is not None else "-"
        print(
            f"  [{status:>7}] {r.case_id:<12} docs={r.documents:<3} cites={r.citations:<3} "
            f"coverage={coverage:<5} fallback={r.fallback_reason or '-'}"
        )
        if r.keywords_missing:
            print(f"            missing keywords: {r.keywords_missing}")


async def main(base_url: str, dataset: Path, output_path: Path, concurrency: int) -> None:
    cases = load_dataset(dataset)
    print(f"Running {len(cases)} questions against {base_url} ...")
    semaphore = asyncio.Semaphore(concurrency)
    async with httpx.AsyncClient(base_url=base_url, timeout=DEFAULT_TIMEOUT) as client:
        results = await asyncio.gather(*(run_case(client, case, semaphore) for case in cases))

    metrics = summarize(results)
    print_report(results, metrics)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump({"metrics": metrics, "results": [asdict(r) for r in results]}, f, indent=2)
    print(f"\nRaw results saved to {output_path}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the chat evaluation harness")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)
    parser.add_argument("--dataset", default=str(DATASET_PATH))
    parser.add_argument("--output", default="data/eval_results.json")
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY)
    args = parser.parse_args()
    asyncio.run(main(args.base_url, Path(args.dataset), Path(args.output), args.concurrency))

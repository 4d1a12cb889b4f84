import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from soc2_agent import config
from soc2_agent.graph.workflow import run_pipeline
from soc2_agent.logging_config import setup_logging
from soc2_agent.models import CostLimitEvent, PipelineResult, ScanMode
from soc2_agent.tools.cost_governor import CostGovernor, GovernorState
from soc2_agent.tools.fix_synthesizer import FixSynthesizer
from soc2_agent.tools.framework_classifier import EXTENSION_LANGUAGES
from soc2_agent.tools.semantic_analyzer import SemanticAnalyzer

logger = logging.getLogger("soc2_agent.cli")

SKIP_DIRS = {".git", "node_modules", "venv", ".venv", "__pycache__", "dist", "build", ".next", ".tox"}


def collect_files(root: str) -> List[str]:
    """Source files under root (or root itself), skipping vendored and oversized files."""
    if os.path.isfile(root):
        return [root]

    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            ext = os.path.splitext(name)[1].lstrip(".").lower()
            if ext not in EXTENSION_LANGUAGES:
                continue
            path = os.path.join(dirpath, name)
            if os.path.getsize(path) > config.MAX_FILE_BYTES:
                logger.info("Skipping %s: larger than %d bytes", path, config.MAX_FILE_BYTES)
                continue
            files.append(path)
    return files


async def _prompt_for_decision(governor: CostGovernor):
    try:
        answer = await asyncio.to_thread(input, "\n[INPUT REQUIRED] Cost limit reached. Continue semantic analysis? [y/N]: ")
    except (EOFError, KeyboardInterrupt):
        logger.warning("No answer to the cost-limit prompt; stopping semantic analysis")
        answer = ""
    governor.respond_to_cost_limit(answer.strip().lower().startswith("y"))


def _interactive() -> bool:
    return sys.stdin is not None and sys.stdin.isatty()


def make_limit_handler(governor: CostGovernor, policy: Optional[str], loop: asyncio.AbstractEventLoop):
    """
    on_limit_reached callback: applies --on-cost-limit, or asks the user.

    Without a terminal to ask, the scan stops. Prompt tasks are kept in
    on_limit_reached.pending until they finish; a prompt that fails stops
    the governor so no worker waits forever.
    """
    pending = set()

    def _prompt_done(task: asyncio.Task):
        pending.discard(task)
        if task.cancelled():
            governor.stop()
        elif task.exception() is not None:
            logger.error("Cost-limit prompt failed: %s", task.exception())
            governor.stop()

    def _start_prompt():
        task = loop.create_task(_prompt_for_decision(governor))
        pending.add(task)
        task.add_done_callback(_prompt_done)

    def on_limit_reached(event: CostLimitEvent):
        print(
            f"\n--- 💸 COST LIMIT: ${event.current_cost_usd:.4f} of ${event.cost_limit_usd:.2f} "
            f"after {event.files_analyzed}/{event.total_files} file(s) ---"
        )
        if policy is not None:
            governor.respond_to_cost_limit(policy == "continue")
        elif not _interactive():
            logger.warning("Cost limit reached with no terminal to ask; stopping semantic analysis")
            governor.respond_to_cost_limit(False)
        else:
            loop.call_soon_threadsafe(_start_prompt)

    on_limit_reached.pending = pending
    return on_limit_reached


async def scan_files(
    files: List[str],
    analyzer: Optional[SemanticAnalyzer],
    synthesizer: FixSynthesizer,
    governor: CostGovernor,
    scan_mode: str,
    use_llm_fixes: bool = False,
    max_concurrent: Optional[int] = None,
) -> List[PipelineResult]:
    """Runs the pipeline over files with a bounded worker pool; results keep the input order."""
    semaphore = asyncio.Semaphore(max_concurrent or config.MAX_CONCURRENT_FILES)
    governor.set_progress(0, len(files))

    async def worker(path: str) -> PipelineResult:
        async with semaphore:
            if governor.state == GovernorState.SUSPENDED:
                await governor.wait_for_decision()
            try:
                with open(path, encoding="utf-8", errors="replace") as f:
                    code = f.read()
            except OSError as e:
                logger.warning("Could not read %s: %s", path, e)
                code = ""
            result = await run_pipeline(
                {"file_path": path, "code": code},
                analyzer=analyzer,
                synthesizer=synthesizer,
                scan_mode=scan_mode,
                use_llm_fixes=use_llm_fixes,
            )
            governor.mark_file_analyzed()
            return result

    return await asyncio.gather(*(worker(path) for path in files))


def print_summary(results: List[PipelineResult], governor: CostGovernor):
    print("\n--- ✅ Scan Complete ---")
    total_violations = 0
    total_fixes = 0
    for result in results:
        if not result.violations:
            continue
        print(f"\n{result.state.get('file_path')}")
        for v in result.violations:
            print(f"  [{v.severity.value.upper():8}] {v.control_id:5} line {v.line_number}: {v.description} ({v.detection_method.value})")
        total_violations += len(result.violations)
        total_fixes += len(result.fixes)

    failed = [r for r in results if not r.success]
    cost = governor.snapshot()
    print("\n--- Final Metrics ---")
    print(f"Files scanned: {len(results)} ({len(failed)} rejected)")
    print(f"Violations: {total_violations}")
    print(f"Fixes proposed (review required): {total_fixes}")
    print(
        f"Semantic cost: ${cost.total_cost_usd:.4f} "
        f"({cost.input_tokens} in / {cost.output_tokens} out / "
        f"{cost.cache_read_tokens} cache read / {cost.cache_write_tokens} cache write)"
    )


def write_report(path: str, results: List[PipelineResult], governor: CostGovernor):
    report = {
        "files": [
            {
                "filePath": r.state.get("file_path"),
                "framework": r.state.get("framework"),
                "success": r.success,
                "error": r.error,
                "violations": [v.model_dump(mode="json", by_alias=True) for v in r.violations],
                "fixes": [f.model_dump(mode="json", by_alias=True) for f in r.fixes],
            }
            for r in results
        ],
        "cost": governor.snapshot().model_dump(mode="json", by_alias=True),
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
    print(f"Report written to {path}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Scan source code for SOC 2 control violations.")
    parser.add_argument("path", nargs="?", help="Project directory or single file to scan")
    parser.add_argument("--scan-mode", choices=[m.value for m in ScanMode], default=config.SCAN_MODE)
    parser.add_argument("--on-cost-limit", choices=["continue", "stop"], default=None,
                        help="Answer the cost-limit prompt automatically")
    parser.add_argument("--cost-limit", type=float, default=config.COST_LIMIT_USD)
    parser.add_argument("--model", default=config.MODEL_NAME)
    parser.add_argument("--llm-fixes", action="store_true", help="Ask the model for fixes before using templates")
    parser.add_argument("--output", help="Write a JSON report to this path")
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    return parser.parse_args(argv)


async def run(args):
    root = args.path
    if not root:
        root = input("\n[INPUT REQUIRED] Enter local project path or file to scan: ").strip() or "."
    if not os.path.exists(root):
        raise SystemExit(f"Error: {root} does not exist")

    files = collect_files(root)
    print(f"Resolved {len(files)} file(s) under {root}")

    governor = CostGovernor(
        args.cost_limit,
        model_name=args.model,
        limit_increment_usd=config.COST_LIMIT_INCREMENT_USD,
    )
    on_limit_reached = make_limit_handler(governor, args.on_cost_limit, asyncio.get_running_loop())
    governor.on_limit_reached = on_limit_reached

    analyzer = None
    llm = None
    if args.scan_mode != ScanMode.REGEX_ONLY.value:
        llm = config.build_llm(model=args.model)
        analyzer = SemanticAnalyzer(llm, governor, model_name=args.model)
        print(f"LLM initialized: {args.model}")
    synthesizer = FixSynthesizer(llm if args.llm_fixes else None, governor)

    print(f"\n--- 🚀 Starting scan ({args.scan_mode}) ---")
    results = await scan_files(files, analyzer, synthesizer, governor, args.scan_mode, args.llm_fixes)
    if on_limit_reached.pending:
        await asyncio.gather(*on_limit_reached.pending, return_exceptions=True)
    return results, governor


def main(argv=None):
    """
    Entry point: resolve the target, build the pipeline collaborators and
    scan every file. The model is only initialized when semantic analysis
    can run.
    """
    args = parse_args(argv)
    setup_logging(args.log_level, config.LOG_DIR)

    results, governor = asyncio.run(run(args))
    print_summary(results, governor)
    if args.output:
        write_report(args.output, results, governor)
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Main entry point for IL2CPP Ingest."""

import argparse
import asyncio
import signal
import sys

from src.il2cpp_ingest.core.config import settings
from src.il2cpp_ingest.core.exceptions import IngestionError
from src.il2cpp_ingest.core.logging import logger
from src.il2cpp_ingest.models.chunk import ChunkProcessingOptions, ProcessingProgress, ProcessingState
from src.il2cpp_ingest.models.record import BatchingStrategy, BatchInsertOptions
from src.il2cpp_ingest.pipeline.manager import get_pipeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest an IL2CPP dump into the vector store")
    parser.add_argument("dump", help="Path to the dump file (dump.cs)")
    parser.add_argument("--chunk-size", type=int, default=settings.CHUNK_SIZE,
                        help=f"Chunk size in characters (default: {settings.CHUNK_SIZE})")
    parser.add_argument("--concurrency", type=int, default=settings.CHUNK_MAX_CONCURRENCY,
                        help=f"Chunks processed at once (default: {settings.CHUNK_MAX_CONCURRENCY})")
    parser.add_argument("--strategy", choices=[s.value for s in BatchingStrategy],
                        default=settings.BATCH_STRATEGY,
                        help=f"Batching strategy (default: {settings.BATCH_STRATEGY})")
    parser.add_argument("--batch-size", type=int, default=settings.FIXED_BATCH_SIZE,
                        help=f"Batch size for the fixed_size strategy (default: {settings.FIXED_BATCH_SIZE})")
    parser.add_argument("--batch-concurrency", type=int, default=settings.BATCH_MAX_CONCURRENCY,
                        help=f"Batches in flight per chunk (default: {settings.BATCH_MAX_CONCURRENCY})")
    parser.add_argument("--max-retries", type=int, default=settings.BATCH_MAX_RETRIES,
                        help=f"Retries per batch (default: {settings.BATCH_MAX_RETRIES})")
    parser.add_argument("--state-file", default=None,
                        help="Save run state here on Ctrl+C so the run can be resumed")
    parser.add_argument("--resume", action="store_true",
                        help="Resume the run saved in --state-file")
    parser.add_argument("--metrics-out", default=None,
                        help="Write performance metrics, bottlenecks and recommendations here as JSON")
    return parser


def print_progress(progress: ProcessingProgress):
    eta = ""
    if progress.estimated_time_remaining_ms is not None:
        eta = f", ETA {progress.estimated_time_remaining_ms / 1000:.0f}s"
    print(
        f"  [{progress.state.value}] {progress.processed_chunks}/{progress.total_chunks} chunks "
        f"({progress.percentage:.1f}%{eta})"
    )


async def run(args: argparse.Namespace) -> int:
    pipeline = get_pipeline()

    resumable = args.state_file is not None
    chunk_options = ChunkProcessingOptions(
        chunk_size=args.chunk_size,
        max_concurrency=args.concurrency,
        progress_callback=print_progress,
        enable_resumable=resumable,
    )
    insert_options = BatchInsertOptions(
        batching_strategy=BatchingStrategy(args.strategy),
        fixed_batch_size=args.batch_size,
        max_concurrency=args.batch_concurrency,
        max_retries=args.max_retries,
    )

    if resumable:
        # First Ctrl+C pauses the run; the state is saved once in-flight chunks finish
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, pipeline.pause)

    print(f"=== Ingesting {args.dump} ===")
    print(f"Chunk size: {args.chunk_size}, concurrency: {args.concurrency}, strategy: {args.strategy}")
    print()

    try:
        if args.resume:
            report = await pipeline.resume_from_file(
                args.state_file,
                source=args.dump,
                chunk_options=chunk_options,
                insert_options=insert_options,
            )
        else:
            report = await pipeline.ingest_file(
                args.dump, chunk_options=chunk_options, insert_options=insert_options
            )
    except IngestionError as e:
        logger.error(f"Ingestion failed: {e.message}")
        print(f"ERROR: {e.message}")
        return 1
    finally:
        await pipeline.close()

    if report.state == ProcessingState.PAUSED and resumable:
        pipeline.save_state(args.state_file)
        print(f"\nPaused. Resume with: --state-file {args.state_file} --resume")

    print("\n=== Ingestion Complete ===" if report.state == ProcessingState.COMPLETED else f"\n=== Ingestion {report.state.value} ===")
    print(f"Chunks: {report.processed_chunks}/{report.total_chunks} ({report.failed_chunks} failed)")
    print(f"Documents inserted: {report.documents_inserted}")
    print(f"Duration: {report.duration_seconds:.1f}s")
    pipeline.metrics.log_summary()
    if args.metrics_out:
        pipeline.metrics.export_data(args.metrics_out)
        print(f"Metrics written to {args.metrics_out}")

    return 0 if report.failed_chunks == 0 else 2


def main():
    args = build_parser().parse_args()
    if args.resume and not args.state_file:
        print("ERROR: --resume requires --state-file")
        sys.exit(1)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()

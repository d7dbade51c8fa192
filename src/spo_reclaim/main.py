import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import ReclaimConfig, load_config
from .errors import ConfigError, ConnectionSetupError
from .models import RunStatistics, format_size
from .sharepoint_sync.batch_pipeline import BatchOrchestrator
from .sharepoint_sync.discovery import DiscoveryFilter, build_discovery
from .sharepoint_sync.sharepoint_client import GraphDocumentStore
from .transform.asset_shrinker import AssetShrinker
from .transform.upload import Uploader, default_strategies
from .transform.version_pruner import VersionPruner
from .utils.db_manager import ProgressLedger
from .utils.report import BatchReporter
from .utils.retry import Retrier

logger = logging.getLogger(__name__)


def setup_logging(config: ReclaimConfig):
    log_file = Path(config.log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding='utf-8')
        ],
        force=True
    )
    # Graph SDK / HTTP client debug output is too chatty for the run log
    for noisy in ('azure', 'httpx', 'kiota_http', 'msgraph'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_orchestrator(config: ReclaimConfig, store=None, ledger: Optional[ProgressLedger] = None) -> BatchOrchestrator:
    """
    Wire store, discovery, transformer, ledger and reporter for the configured mode

    Args:
        config: Validated configuration
        store: Document store (default: GraphDocumentStore from the credentials)
        ledger: Progress ledger (default: opened at config.ledger_path)
    """
    if store is None:
        store = GraphDocumentStore(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            client_secret=config.client_secret,
            site_url=config.site_url,
            library=config.library,
            chunk_size=config.upload_chunk_size
        )

    retrier = Retrier(
        max_retries=config.max_retries,
        base_delay=config.base_delay_seconds,
        throttle_cooldown=config.throttle_cooldown_seconds
    )

    filters = DiscoveryFilter(
        extension=config.extension,
        name_contains=config.name_filter,
        min_size=config.min_size_bytes,
        max_size=config.max_size_bytes,
        modified_after=config.modified_after,
        modified_before=config.modified_before
    )
    discovery = build_discovery(
        store,
        filters,
        strategy=config.strategy,
        page_size=config.page_size,
        cap=config.max_items,
        page_pause=config.page_pause_seconds,
        site_url=config.site_url
    )

    if config.mode == "versions":
        transformer = VersionPruner(
            store,
            retrier,
            cutoff=config.cutoff_date,
            keep_min_versions=config.keep_min_versions,
            dry_run=config.dry_run
        )
    else:
        uploader = Uploader(store, retrier, default_strategies(config.chunked_upload_threshold))
        transformer = AssetShrinker(
            store,
            retrier,
            uploader,
            scratch_dir=config.scratch_dir,
            target_width=config.target_width,
            dry_run=config.dry_run
        )

    return BatchOrchestrator(
        store=store,
        discovery=discovery,
        transformer=transformer,
        ledger=ledger or ProgressLedger(config.ledger_path),
        reporter=BatchReporter(top_n=config.top_n),
        resume=config.resume,
        dry_run=config.dry_run,
        ledger_key=config.ledger_key,
        test_mode=config.test_mode,
        test_mode_limit=config.test_mode_limit,
        item_pause=config.item_pause_seconds,
        report_dir=config.report_dir
    )


async def run_reclaim(config: ReclaimConfig) -> RunStatistics:
    orchestrator = build_orchestrator(config)
    try:
        return await orchestrator.run()
    finally:
        orchestrator.ledger.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SharePoint Online storage reclamation")
    parser.add_argument("--config", type=Path, help="Path to YAML config file")
    parser.add_argument("--mode", choices=["versions", "shrink"], help="Prune old versions or shrink embedded images")
    parser.add_argument("--site-url", dest="site_url", help="SharePoint site URL")
    parser.add_argument("--library", help="Document library name")
    parser.add_argument("--scratch-dir", dest="scratch_dir", help="Local scratch directory")
    parser.add_argument("--extension", help="File extension to target (e.g. .pptx, .docx)")
    parser.add_argument("--name-filter", dest="name_filter", help="File name substring")
    parser.add_argument("--min-size", dest="min_size_bytes", type=int, help="Minimum file size in bytes")
    parser.add_argument("--max-size", dest="max_size_bytes", type=int, help="Maximum file size in bytes")
    parser.add_argument("--modified-after", dest="modified_after", help="Only files modified on/after this date")
    parser.add_argument("--modified-before", dest="modified_before", help="Only files modified before this date")
    parser.add_argument("--cutoff-date", dest="cutoff_date", help="Versions created before this date may be deleted")
    parser.add_argument("--keep-min-versions", dest="keep_min_versions", type=int, help="Newest versions always kept")
    parser.add_argument("--max-items", dest="max_items", type=int, help="Maximum items per run")
    parser.add_argument("--page-size", dest="page_size", type=int, help="Discovery page size")
    parser.add_argument("--discovery", dest="strategy", choices=["search", "enumeration"], help="Discovery strategy")
    parser.add_argument("--max-retries", dest="max_retries", type=int, help="Retries per remote operation")
    parser.add_argument("--target-width", dest="target_width", type=int, help="Raster image width in pixels")
    parser.add_argument("--ledger-key", dest="ledger_key", choices=["path", "name"], help="Ledger identity key")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", default=None,
                        help="Log intended deletions/uploads without changing anything")
    parser.add_argument("--resume", dest="resume", action="store_true", default=None,
                        help="Skip items recorded in the ledger")
    parser.add_argument("--no-resume", dest="resume", action="store_false", help="Ignore the ledger")
    parser.add_argument("--test-mode", dest="test_mode", action="store_true", default=None,
                        help="Process only a handful of items")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        overrides = {k: v for k, v in vars(args).items() if k != 'config'}
        config.apply_overrides(overrides)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(2)

    setup_logging(config)
    logger.info(f"Starting {config.mode} run against {config.site_url}{' (dry run)' if config.dry_run else ''}")

    try:
        stats = asyncio.run(run_reclaim(config))
    except ConnectionSetupError as e:
        logger.error(f"Connection failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\nInterrupted")
        sys.exit(1)

    print("\n" + "=" * 50)
    print("Result:")
    print(f"  Mode: {config.mode}{' (dry run)' if config.dry_run else ''}")
    print(f"  Candidates: {stats.total_candidates}")
    print(f"  Succeeded: {stats.succeeded}")
    print(f"  Skipped: {stats.skipped}")
    print(f"  Failed: {stats.failed}")
    print(f"  Reclaimed: {format_size(stats.bytes_saved)}")
    print(f"  Elapsed: {stats.elapsed_seconds:.2f}s")
    print("=" * 50)


if __name__ == "__main__":
    main()

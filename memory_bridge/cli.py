#!/usr/bin/env python3
"""
Memory Bridge CLI - Command line interface for memory storage and migration.

Usage:
    memory-bridge migrate --source=PATH --target=CONN [--dry-run] [--batch-size=N] [--verify]
    memory-bridge health-check [--backend=BACKEND] [--format=FORMAT]
    memory-bridge maintenance [--backend=BACKEND]
    memory-bridge config show [--section=SECTION]
    memory-bridge config validate
    memory-bridge version
    memory-bridge --help

Commands:
    migrate             Migrate memory entries from a SQLite database into a backend
    health-check        Check backend health
    maintenance         Refresh statistics and reclaim space
    config              Show or validate configuration
    version             Show version information

Options:
    -h --help           Show this help message
    --source=PATH       SQLite database to migrate from [default: migration.source_path]
    --target=CONN       postgresql:// URL or SQLite database path
    --dry-run           Validate source rows without writing
    --batch-size=N      Rows per batch [default: 1000]
    --verify            Verify counts and sampled entries after migrating
    --backend=BACKEND   Storage backend (sqlite, postgresql) [default: configured]
    --format=FORMAT     Output format (text, json) [default: text]
    --section=SECTION   Configuration section
    --config=DIR        Configuration directory [default: ./config]
"""

import os
import sys
import asyncio
import json
import yaml
from typing import Any, Dict, List, Optional, Tuple
import logging
from logging.handlers import RotatingFileHandler
import traceback

import dotenv

from memory_bridge import __version__
from memory_bridge.config import ConfigValidationError, LoggingConfig, get_config, init_config
from memory_bridge.migration import MigrationError, VerificationFailedError, migrate_memory_data
from memory_bridge.model.migration_stats import MigrationStats
from memory_bridge.storage import MemoryBackendError, create_storage
from memory_bridge.storage.backends.postgresql import mask_connection_string
from memory_bridge.storage.factory import POSTGRES_SCHEMES

logger = logging.getLogger(__name__)


def setup_logging(logging_config: LoggingConfig):
    """Configure the root logger from the logging section."""
    handlers: List[logging.Handler] = []
    if logging_config.enable_console:
        handlers.append(logging.StreamHandler())
    if logging_config.file_path:
        handlers.append(
            RotatingFileHandler(
                logging_config.file_path,
                maxBytes=logging_config.max_file_size,
                backupCount=logging_config.backup_count,
            )
        )
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging_config.level.value,
        format=logging_config.format,
        handlers=handlers,
        force=True,
    )


def _flag(args: Dict[str, Any], name: str) -> bool:
    value = args.get(name, False)
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes")
    return bool(value)


class MemoryBridgeCLI:
    """Memory Bridge command line interface."""

    def __init__(self, config_manager=None):
        self.config_manager = config_manager

    def _config(self):
        if self.config_manager is None:
            self.config_manager = get_config()
        return self.config_manager

    async def migrate_command(self, source: Optional[str], target: Optional[str],
                              dry_run: bool = False, batch_size: Any = None,
                              verify: bool = False):
        """Migrate memory entries into the target backend."""
        config = self._config().config
        source = source or config.migration.source_path
        target = target or self._default_target()
        dry_run = dry_run or config.migration.dry_run
        verify = verify or config.migration.verify

        try:
            batch_size = int(batch_size) if batch_size is not None else config.migration.batch_size
        except (TypeError, ValueError):
            batch_size = 0
        if batch_size <= 0:
            print("❌ --batch-size must be a positive integer")
            sys.exit(1)

        if not target:
            print("❌ Migration requires --target (or DATABASE_URL)")
            sys.exit(1)

        shown_target = mask_connection_string(target)
        mode = " (dry run)" if dry_run else ""
        print(f"🔄 Migrating {source} -> {shown_target}{mode}...")

        try:
            stats = await migrate_memory_data(
                source,
                target,
                dry_run=dry_run,
                batch_size=batch_size,
                verify=verify,
                progress_callback=self._migration_progress,
            )
        except VerificationFailedError as e:
            print("❌ Migration verification failed")
            print(json.dumps(e.verification.to_dict(), indent=2))
            if e.stats is not None:
                self._print_stats(e.stats)
            sys.exit(1)
        except MigrationError as e:
            print(f"❌ Migration failed: {e}")
            if e.stats is not None:
                self._print_stats(e.stats)
            sys.exit(1)
        except (MemoryBackendError, ValueError) as e:
            print(f"❌ Migration failed: {e}")
            sys.exit(1)

        print("✅ Migration completed successfully")
        self._print_stats(stats)

    def _default_target(self) -> Optional[str]:
        storage = self._config().config.storage
        if storage.backend.value == "postgresql":
            return storage.postgresql.connection_string
        return storage.sqlite.database_path

    async def health_check_command(self, backend: Optional[str] = None, format: str = "text"):
        """Check backend health."""
        if format != "json":
            print("🏥 Checking backend health...")

        try:
            storage = create_storage(backend)
        except ValueError as e:
            print(f"❌ Health check failed: {e}")
            sys.exit(1)

        try:
            try:
                await storage.initialize(create_schema=False)
            except MemoryBackendError as e:
                status = {"healthy": False, "error": str(e)}
            else:
                status = await storage.get_health_status()
        finally:
            await storage.shutdown()

        if format == "json":
            print(json.dumps(status, indent=2, default=str))
        else:
            self._print_health_status(status)

        if not status.get("healthy"):
            sys.exit(1)

    async def maintenance_command(self, backend: Optional[str] = None):
        """Run database maintenance."""
        print("🧹 Running database maintenance...")

        try:
            storage = create_storage(backend)
            try:
                await storage.initialize(create_schema=False)
                await storage.perform_maintenance()
            finally:
                await storage.shutdown()
        except (MemoryBackendError, ValueError) as e:
            print(f"❌ Maintenance failed: {e}")
            sys.exit(1)

        print("✅ Maintenance completed")

    def config_command(self, action: str, section: Optional[str] = None):
        """Manage configuration."""
        if action == "show":
            self._show_config(section)
        elif action == "validate":
            self._validate_config()
        else:
            print(f"❌ Unknown config action: {action}")
            sys.exit(1)

    def _show_config(self, section: Optional[str] = None):
        """Show configuration."""
        config = self._config().to_dict()
        postgresql = config["storage"]["postgresql"]
        if postgresql.get("connection_string"):
            postgresql["connection_string"] = mask_connection_string(postgresql["connection_string"])

        if section:
            if section not in config:
                print(f"❌ Unknown configuration section: {section}")
                sys.exit(1)
            config = config[section]
            print(f"📋 Configuration - {section}")
        else:
            print("📋 Configuration")

        print("=" * 50)
        print(yaml.dump(config, indent=2, default_flow_style=False))

    def _validate_config(self):
        """Validate configuration."""
        print("✅ Validating configuration...")

        try:
            self._config().validate()
        except ConfigValidationError as e:
            print(f"❌ {e}")
            sys.exit(1)

        print("✅ Configuration is valid")

    def version_command(self):
        """Show version information."""
        print(f"Memory Bridge CLI v{__version__}")
        print("")
        print("Features:")
        print("• Batched SQLite to PostgreSQL migration with dry run and verification")
        print("• PostgreSQL and SQLite memory backends")
        print("• Health reporting and online maintenance")

    def _migration_progress(self, processed: int, total: int):
        """Migration progress callback."""
        percent = (processed / total * 100.0) if total else 100.0
        print(f"🔄 {percent:.1f}% - {processed}/{total} entries processed")

    def _print_stats(self, stats: MigrationStats):
        print(f"📊 Total: {stats.total_entries}")
        print(f"   Migrated: {stats.migrated_entries}")
        print(f"   Skipped: {stats.skipped_entries}")
        print(f"   Errors: {stats.errors}")
        print(f"   Duration: {stats.duration:.0f}ms")

    def _print_health_status(self, status: Dict[str, Any]):
        """Print health status in human-readable format."""
        if not status.get("healthy"):
            print("❌ Overall Status: UNHEALTHY")
            print(f"   Error: {status.get('error', 'unknown')}")
            return

        print("✅ Overall Status: HEALTHY")
        print("")
        print("Metrics:")
        print("-" * 30)
        for name, value in status.get("metrics", {}).items():
            print(f"  {name}: {value}")


def parse_args(argv: Optional[List[str]] = None) -> Tuple[str, Dict[str, Any]]:
    """Parse command line arguments manually."""
    argv = sys.argv[1:] if argv is None else argv

    if len(argv) < 1:
        print(__doc__)
        sys.exit(1)

    command = argv[0]
    args: Dict[str, Any] = {}

    # Parse remaining arguments
    i = 1
    while i < len(argv):
        arg = argv[i]

        if arg.startswith('--'):
            if '=' in arg:
                key, value = arg[2:].split('=', 1)
                args[key] = value
            else:
                key = arg[2:]
                if i + 1 < len(argv) and not argv[i + 1].startswith('--'):
                    args[key] = argv[i + 1]
                    i += 1
                else:
                    args[key] = True
        else:
            # Positional argument
            args.setdefault('positional', []).append(arg)

        i += 1

    return command, args


async def async_main(argv: Optional[List[str]] = None):
    """Dispatch a parsed command."""
    command, args = parse_args(argv)

    if command in ["--help", "-h", "help"]:
        print(__doc__)
        return

    if command == "version":
        MemoryBridgeCLI().version_command()
        return

    dotenv.load_dotenv()

    try:
        config_manager = init_config(args.get('config'))
    except ConfigValidationError as e:
        print(f"❌ {e}")
        sys.exit(1)

    setup_logging(config_manager.config.logging)
    cli = MemoryBridgeCLI(config_manager)

    if command == "migrate":
        target = args.get('target')
        if target is not None and not isinstance(target, str):
            print("❌ --target requires a value")
            sys.exit(1)
        if isinstance(target, str) and not target.startswith(POSTGRES_SCHEMES) and "://" in target:
            print(f"❌ Unsupported target: {mask_connection_string(target)}")
            sys.exit(1)

        await cli.migrate_command(
            source=args.get('source') if isinstance(args.get('source'), str) else None,
            target=target,
            dry_run=_flag(args, 'dry-run'),
            batch_size=args.get('batch-size'),
            verify=_flag(args, 'verify'),
        )

    elif command == "health-check":
        await cli.health_check_command(
            backend=args.get('backend'),
            format=args.get('format', 'text'),
        )

    elif command == "maintenance":
        await cli.maintenance_command(backend=args.get('backend'))

    elif command == "config":
        if 'positional' not in args or len(args['positional']) == 0:
            print("❌ Config command requires action (show, validate)")
            sys.exit(1)

        cli.config_command(action=args['positional'][0], section=args.get('section'))

    else:
        print(f"❌ Unknown command: {command}")
        print("Run 'memory-bridge --help' for usage information")
        sys.exit(1)


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    try:
        asyncio.run(async_main(argv))
    except KeyboardInterrupt:
        print("\n🛑 Operation cancelled")
        sys.exit(1)
    except Exception as e:
        print(f"❌ Unexpected error: {e}")
        if os.getenv('DEBUG'):
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()

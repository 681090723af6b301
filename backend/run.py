#!/usr/bin/env python3
"""
Repository Security Scanner - command-line entry point

Runs the API server, or a scan in-process without the HTTP layer.
"""
import asyncio
import sys
import json
import argparse
from pathlib import Path

import uvicorn

from repo_scanner.config import settings
from repo_scanner.core.error_handling.exceptions import ScannerBaseException
from repo_scanner.core.logging.structured_logger import get_logger, logger_manager
from repo_scanner.core.reports import serialize_report
from repo_scanner.core.resilience.token_scheduler import init_token_scheduler
from repo_scanner.core.scanner.orchestrator import ScanOrchestrator
from repo_scanner.database import init_db

logger = get_logger(__name__)


class ScannerCLI:
    """Command-line interface for the repository scanner"""

    def __init__(self):
        init_db()
        init_token_scheduler()
        self.orchestrator = ScanOrchestrator()

    async def run_scan(self, repo_url: str, branch: str, scan_type: str) -> dict:
        report, files = await self.orchestrator.start_scan(repo_url, branch, scan_type)
        print(f"[*] Report ID: {report.report_id}")
        print(f"[*] Files to scan: {len(files)}")

        if files:
            await self.orchestrator.process_repository(report.report_id, files)
        return serialize_report(self.orchestrator.store.require_report(report.report_id))

    async def retry(self, report_id: str, interrupted: bool = False) -> dict:
        files = self.orchestrator.prepare_retry(report_id, job_running=not interrupted)
        if not files:
            print("[*] No failed files found to retry.")
        else:
            print(f"[*] Retrying {len(files)} failed files")
            await self.orchestrator.retry_failed_files(report_id, files)
        return serialize_report(self.orchestrator.store.require_report(report_id))

    def show(self, report_id: str) -> dict:
        return serialize_report(self.orchestrator.store.require_report(report_id))

    def print_summary(self, report: dict):
        progress = report["progress"]
        counts = report["vulnerability_count"]
        print(f"""
[+] Report: {report['report_id']}
[+] Status: {report['status']}
[+] Files: {progress['processed_files']}/{progress['total_files']} ({progress['percentage']}%)
[+] Severity mentions: Critical {counts['Critical']}, High {counts['High']}, Medium {counts['Medium']}, Low {counts['Low']}
""")
        if report.get("error_log"):
            print(f"[!] {report['error_log']}")

    def save_results(self, report: dict, output_path: str):
        path = Path(output_path)
        if not path.suffix:
            path = path.with_suffix('.json')
        path.write_text(json.dumps(report, indent=2, default=str))
        print(f"[+] Results saved to: {path}")


def main():
    parser = argparse.ArgumentParser(
        description='Repository Security Scanner',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py serve --port 8001
  python run.py scan https://github.com/org/repo --scan-type sbom -o report.json
  python run.py retry 20240101120000_abcd1234_COMPLETE_1a2b3c4d
  python run.py report 20240101120000_abcd1234_COMPLETE_1a2b3c4d
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='Run the HTTP API')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=8001)
    serve.add_argument('--reload', action='store_true')

    scan = subparsers.add_parser('scan', help='Scan a repository in-process')
    scan.add_argument('repo_url')
    scan.add_argument('--branch', default='main')
    scan.add_argument('--scan-type', default='complete', choices=['complete', 'sbom', 'vulnerability'])
    scan.add_argument('-o', '--output', help='Output file for the report (JSON)')

    retry = subparsers.add_parser('retry', help='Retry the failed files of a report')
    retry.add_argument('report_id')
    retry.add_argument('--interrupted', action='store_true',
                       help='Also accept a report left in_progress by a process that died')

    report = subparsers.add_parser('report', help='Print a stored report')
    report.add_argument('report_id')
    report.add_argument('-o', '--output', help='Output file for the report (JSON)')

    subparsers.add_parser('init-db', help='Create database tables')

    args = parser.parse_args()
    logger_manager.set_default_level('DEBUG' if args.verbose else settings.log_level)

    if args.command == 'serve':
        uvicorn.run('repo_scanner.main:app', host=args.host, port=args.port, reload=args.reload)
        return

    if args.command == 'init-db':
        init_db()
        print("[+] Database tables created")
        return

    cli = ScannerCLI()
    try:
        if args.command == 'scan':
            result = asyncio.run(cli.run_scan(args.repo_url, args.branch, args.scan_type))
        elif args.command == 'retry':
            result = asyncio.run(cli.retry(args.report_id, args.interrupted))
        else:
            result = cli.show(args.report_id)
    except KeyboardInterrupt:
        print("\n[!] Scan interrupted by user")
        sys.exit(1)
    except ScannerBaseException as e:
        logger.error(f"Command failed: {e.message}", error=e)
        print(f"[!] {e.message}")
        sys.exit(1)

    cli.print_summary(result)
    if getattr(args, 'output', None):
        cli.save_results(result, args.output)


if __name__ == "__main__":
    main()

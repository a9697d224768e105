#!/usr/bin/env python3
"""
Signal Strategy Backtester
Main entry point.

Usage:
    python main.py backtest --quotes quotes.csv --signals signals.csv
    python main.py sweep --quotes quotes.csv --signals signals.csv --position-size 500 1000
"""

import argparse
import itertools
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from backtest import Backtester, PerformanceMetrics, QuoteStore, SignalStream, run_parameter_sweep
from backtest.backtester import trades_to_frame
from shared.constants import OUTPUT_DIR
from shared.exceptions import BacktestError
from shared.io_utils import atomic_json_write
from shared.types import AppConfig
from utils import load_config, setup_logging, validate_config

logger = logging.getLogger(__name__)


class BacktestApp:
    """
    Wires configuration, input tables, the backtester and reporting together.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self.perf = PerformanceMetrics(self.config)

    def _input_path(self, explicit: Optional[str], key: str) -> str:
        path = explicit or self.config.get('data', {}).get(key)
        # Unresolved "${ENV_VAR}" references count as unset
        if not path or path.startswith('${'):
            raise BacktestError(f"No input given for {key} (pass it on the command line or set data.{key})")
        return path

    def load_inputs(self, quotes: Optional[str], signals: Optional[str]):
        store = QuoteStore.from_frame(self._input_path(quotes, 'quotes_file'))
        stream = SignalStream.from_frame(self._input_path(signals, 'signals_file'))
        logger.info(f"Loaded {len(store)} quotes and {len(stream)} signals")
        return store, stream

    def run_backtest(self, quotes: Optional[str] = None, signals: Optional[str] = None,
                     report: bool = False) -> Dict:
        """
        Run one backtest and print / save its summary.

        Args:
            quotes: Quote table CSV (defaults to data.quotes_file)
            signals: Signal table CSV (defaults to data.signals_file)
            report: Write text/JSON reports even if generate_reports is off
        """
        store, stream = self.load_inputs(quotes, signals)
        result = Backtester(self.config).run(store, stream)

        results = self.perf.summarize(result)
        self.perf.print_summary(results)

        if report or self.config.get('backtest', {}).get('generate_reports', False):
            report_file = self.perf.generate_report(results)
            logger.info(f"Backtest report saved to: {report_file}")

            trades_file = self.perf.report_dir / 'trades.csv'
            trades_to_frame(result.trades).to_csv(trades_file, index=False)
            logger.info(f"Trade ledger saved to: {trades_file}")

        return results

    def run_sweep(self, quotes: Optional[str], signals: Optional[str],
                  position_sizes: List[float], max_positions: List[int],
                  workers: int = 4) -> List[Dict]:
        """
        Run one backtest per (position_size, max_positions) combination.
        """
        store, stream = self.load_inputs(quotes, signals)
        grid = [
            {'position_size': size, 'max_positions': cap}
            for size, cap in itertools.product(position_sizes, max_positions)
        ]
        results = run_parameter_sweep(store, stream, self.config, grid, max_workers=workers)

        rows = []
        for overrides, result in zip(grid, results):
            summary = self.perf.summarize(result)
            rows.append({
                **overrides,
                'total_trades': summary['total_trades'],
                'total_pnl': summary['total_pnl'],
                'return_pct': summary['return_pct'],
                'max_drawdown': summary['max_drawdown'],
                'sharpe_ratio': summary['sharpe_ratio'],
            })
            logger.info(
                f"size={overrides['position_size']:.0f} cap={overrides['max_positions']} -> "
                f"trades={summary['total_trades']} pnl=${summary['total_pnl']:,.2f} "
                f"sharpe={summary['sharpe_ratio']:.2f}"
            )

        out = os.path.join(OUTPUT_DIR, 'sweep_results.json')
        atomic_json_write(Path(out), rows)
        logger.info(f"Sweep results saved to: {out}")
        return rows


def create_app(config_file: str = 'config.yaml') -> BacktestApp:
    """Load config, validate, set up logging and build a BacktestApp.

    Args:
        config_file: Path to the YAML configuration file.

    Returns:
        A ready BacktestApp.
    """
    config = load_config(config_file)
    validate_config(config)
    setup_logging(config)
    return BacktestApp(config=config)


def main():
    """
    Main entry point.
    """
    parser = argparse.ArgumentParser(
        description='Signal Strategy Backtester',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py backtest --quotes data/quotes.csv --signals data/signals.csv
  python main.py backtest --report
  python main.py sweep --position-size 500 1000 2000 --max-positions 5 10
        """
    )

    parser.add_argument(
        'command',
        choices=['backtest', 'sweep'],
        help='Command to run'
    )

    parser.add_argument('--quotes', help='Quote table CSV (default: data.quotes_file)')
    parser.add_argument('--signals', help='Signal table CSV (default: data.signals_file)')

    parser.add_argument(
        '--report',
        action='store_true',
        default=False,
        help='Write text/JSON report and trade ledger'
    )

    parser.add_argument(
        '--position-size',
        type=float,
        nargs='+',
        default=[1000.0],
        help='Position sizes to sweep (default: 1000)'
    )

    parser.add_argument(
        '--max-positions',
        type=int,
        nargs='+',
        default=[10],
        help='Position caps to sweep (default: 10)'
    )

    parser.add_argument(
        '--workers',
        type=int,
        default=4,
        help='Parallel backtests for sweep (default: 4)'
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Config file path (default: config.yaml)'
    )

    args = parser.parse_args()

    try:
        app = create_app(config_file=args.config)

        if args.command == 'backtest':
            app.run_backtest(args.quotes, args.signals, report=args.report)

        elif args.command == 'sweep':
            app.run_sweep(args.quotes, args.signals, args.position_size,
                          args.max_positions, workers=args.workers)

        logger.info("Command completed successfully")

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)

    except (BacktestError, FileNotFoundError) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()

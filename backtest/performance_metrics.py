"""
Performance Metrics
Calculate and display performance statistics.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Tuple

from backtest.metrics import summarize_results
from shared.constants import DEFAULT_RISK_FREE_RATE, OUTPUT_DIR
from shared.io_utils import atomic_json_write
from shared.types import ResultsSummary

logger = logging.getLogger(__name__)


class PerformanceMetrics:
    """
    Calculate and report performance metrics.
    """

    def __init__(self, config: Dict):
        """
        Initialize performance metrics calculator.

        Args:
            config: Configuration dictionary
        """
        self.config = config
        bt = config.get('backtest', {})
        self.risk_free_rate = float(bt.get('risk_free_rate', DEFAULT_RISK_FREE_RATE))
        self.report_dir = Path(bt.get('report_dir', Path(OUTPUT_DIR) / 'reports'))

    def summarize(self, backtest_result) -> ResultsSummary:
        """Summary statistics for a BacktestResult."""
        return summarize_results(backtest_result, self.risk_free_rate)

    def generate_report(self, results: ResultsSummary) -> str:
        """
        Write a text report and a JSON dump of *results*.

        Args:
            results: Summary from ``summarize``

        Returns:
            Path to generated report file ("" when there is nothing to report)
        """
        if not results:
            logger.warning("No backtest results to report")
            return ""

        self.report_dir.mkdir(parents=True, exist_ok=True)
        stamp = self._timestamp()

        report_file = self.report_dir / f"backtest_report_{stamp}.txt"
        try:
            report_file.write_text(self._generate_text_report(results))
            logger.info(f"Report generated: {report_file}")
        except OSError as e:
            logger.warning(f"Failed to write text report to {report_file}: {e}")

        json_file = self.report_dir / f"backtest_results_{stamp}.json"
        try:
            atomic_json_write(json_file, results)
        except OSError as e:
            logger.warning(f"Failed to write JSON results to {json_file}: {e}")

        return str(report_file)

    def _sections(self, results: ResultsSummary) -> List[Tuple[str, List[Tuple[str, str]]]]:
        """Report layout as (heading, [(label, formatted value), ...])."""
        trade_stats = [
            ("Average Win", f"${results['avg_win']:,.2f}"),
            ("Average Loss", f"${results['avg_loss']:,.2f}"),
            ("Profit Factor", f"{results['profit_factor']:.2f}"),
        ]
        trade_stats += [
            (f"Closed by {reason}", str(count))
            for reason, count in sorted(results['exit_reasons'].items())
        ]

        sections = [
            ("SUMMARY", [
                ("Total Trades", str(results['total_trades'])),
                ("Winning Trades", str(results['winning_trades'])),
                ("Losing Trades", str(results['losing_trades'])),
                ("Win Rate", f"{results['win_rate']:.2f}%"),
            ]),
            ("RETURNS", [
                ("Starting Capital", f"${results['starting_capital']:,.2f}"),
                ("Ending Capital", f"${results['ending_capital']:,.2f}"),
                ("Total P&L", f"${results['total_pnl']:,.2f}"),
                ("Return", f"{results['return_pct']:.2f}%"),
            ]),
            ("TRADE STATISTICS", trade_stats),
            ("RISK METRICS", [
                ("Max Drawdown", f"{results['max_drawdown']:.2f}%"),
                ("Sharpe Ratio", f"{results['sharpe_ratio']:.2f}"),
                ("Sortino Ratio", f"{results['sortino_ratio']:.2f}"),
            ]),
        ]
        if results['skipped_signals']:
            sections.append(("SKIPPED SIGNALS", [
                (reason, str(count))
                for reason, count in sorted(results['skipped_signals'].items())
            ]))
        return sections

    def _generate_text_report(self, results: ResultsSummary) -> str:
        rule = "=" * 80
        lines = [rule, "SIGNAL STRATEGY - BACKTEST REPORT", rule, ""]
        for heading, rows in self._sections(results):
            lines += [heading, "-" * 80]
            lines += [f"{label}: {value}" for label, value in rows]
            lines.append("")
        lines.append(rule)
        return "\n".join(lines)

    def _timestamp(self) -> str:
        return datetime.now().strftime("%Y%m%d_%H%M%S")

    def print_summary(self, results: ResultsSummary):
        """
        Print the headline numbers to the console.
        """
        headline = ("Total Trades", "Win Rate", "Total P&L", "Return",
                    "Max Drawdown", "Sharpe Ratio", "Sortino Ratio")
        rows = dict(row for _, section in self._sections(results) for row in section)

        print("\n" + "=" * 60)
        print("BACKTEST SUMMARY")
        print("=" * 60)
        for label in headline:
            print(f"{label}: {rows[label]}")
        print("=" * 60 + "\n")

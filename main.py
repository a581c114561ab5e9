# main.py
import asyncio
import sys
import questionary
from datetime import datetime
from rich.live import Live
from rich.table import Table
from rich.layout import Layout
from rich.console import Console
from rich.panel import Panel

from spreadguard.config import load_config
from spreadguard.logger import setup_console_logger, AsyncAuditLogger
from spreadguard.service import ArbitrageService

# --- UI HELPER FUNCTIONS ---

def startup_selection(config):
    """Interactive CLI to select symbols and the exchange pair to watch."""
    print("\n🛡️ SPREADGUARD ARBITRAGE RUNNER \n")
    symbols = questionary.checkbox(
        "Select Symbols to Watch:",
        choices=[questionary.Choice(s, checked=s in config['runner']['symbols']) for s in config['supported_symbols']]
    ).ask()
    if not symbols:
        print("No symbols selected. Exiting.")
        sys.exit()

    avail_exchanges = list(config['exchanges'].keys())
    exchanges = questionary.checkbox("Select Exchanges to Activate:", choices=avail_exchanges).ask()
    if not exchanges or len(exchanges) < 2:
        print("Need at least 2 exchanges for arbitrage. Exiting.")
        sys.exit()
    return symbols, exchanges


def generate_dashboard(service: ArbitrageService):
    """
    Rich layout: runner counters, portfolio, and the latest decisions.
    """
    status = service.get_status()
    portfolio = service.portfolio()

    # 1. Runner
    runner_table = Table(title="⚙️ Runner")
    runner_table.add_column("Metric", style="cyan")
    runner_table.add_column("Value", justify="right", style="green")
    last_poll = datetime.fromtimestamp(status.last_poll_time / 1000).strftime("%H:%M:%S") if status.last_poll_time else "-"
    runner_table.add_row("Status", "[green]RUNNING[/green]" if status.is_running else "[red]STOPPED[/red]")
    runner_table.add_row("Symbols", ", ".join(status.current_symbols))
    runner_table.add_row("Polls", str(status.poll_count))
    runner_table.add_row("Last Poll", last_poll)
    runner_table.add_row("Opportunities", str(status.opportunities_processed))
    runner_table.add_row("Executions", f"{status.executions_successful}/{status.executions_attempted}")

    # 2. Recent decisions
    decisions = Table(title="🧠 Recent Decisions")
    decisions.add_column("Time", style="dim")
    decisions.add_column("Symbol", style="cyan")
    decisions.add_column("Spread", justify="right")
    decisions.add_column("Risk", justify="right")
    decisions.add_column("Debate", justify="right")
    decisions.add_column("Guardian")
    decisions.add_column("P&L", justify="right")

    for entry in reversed(service.enhanced_audit_log(8)):
        risk = entry.agents_outputs.get("risk", {})
        debate = entry.agents_outputs.get("debate", {})
        guardian = entry.guardian_decision
        pnl = entry.execution_result.get("net_profit") if entry.execution_result else None
        decisions.add_row(
            datetime.fromtimestamp(entry.timestamp / 1000).strftime("%H:%M:%S"),
            entry.symbol,
            f"{entry.opportunity.get('spread_pct', 0.0):.2f}%",
            f"{risk.get('risk_score', 0.0):.0f}",
            f"{debate.get('final_decision_score', 0.0):.2f} {debate.get('decision', '')}",
            "[green]PASS[/green]" if guardian.get("passed") else f"[red]{guardian.get('reason') or 'VETO'}[/red]",
            f"${pnl:+,.2f}" if pnl is not None else "-",
        )

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(runner_table), ratio=1),
        Layout(Panel(decisions), ratio=2)
    )

    footer = Panel(
        f"[bold gold1]CASH: ${portfolio['cash']:,.2f} | TOTAL VALUE: ${portfolio['total_value']:,.2f} | "
        f"EXPOSURE: {service.inventory.exposure_pct() * 100:.1f}%[/bold gold1]",
        style="white on blue"
    )
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout

# --- MAIN CONTROLLER ---

class ArbitrageConsole:
    def __init__(self, config, selected_symbols, selected_exchanges):
        self.config = config
        # Simulated venues quote off their reference, so it stays loaded
        keep = set(selected_exchanges)
        keep.update(v['reference'] for k, v in config['exchanges'].items() if k in keep and v.get('reference'))
        self.config['exchanges'] = {k: v for k, v in config['exchanges'].items() if k in keep}
        self.config['detector']['pairs'] = [
            p for p in config['detector']['pairs'] if p[0] in selected_exchanges and p[1] in selected_exchanges
        ] or [selected_exchanges[:2]]
        self.config['runner']['symbols'] = selected_symbols

        self.logger = setup_console_logger("spreadguard", "ERROR")
        self.service = ArbitrageService(
            self.config,
            self.logger,
            trade_log=AsyncAuditLogger(self.config['audit']['trade_log']),
        )

    async def run(self):
        try:
            print("Initializing Diagnostic Checks...")
            is_healthy = await self.service.initialize()
            if not is_healthy:
                print("⚠️ Some sources failed diagnostics. Continuing with the ones that answered.")

            self.service.set_symbols(self.config['runner']['symbols'])
            await self.service.start()

            console = Console()
            with Live(console=console, refresh_per_second=4) as live:
                while True:
                    live.update(generate_dashboard(self.service))
                    await asyncio.sleep(0.25)
        finally:
            print("Shutting down resources...")
            await self.service.shutdown()


if __name__ == "__main__":
    raw_conf = load_config("config.yaml")
    try:
        sel_symbols, sel_exs = startup_selection(raw_conf)
        console_app = ArbitrageConsole(raw_conf, sel_symbols, sel_exs)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(console_app.run())
    except KeyboardInterrupt:
        print("\n🛑 Runner Stopped by User.")
        sys.exit()

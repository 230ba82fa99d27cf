import asyncio
import logging
import time
from typing import Optional

from rich import box
from rich.console import Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gate_mm.utils.logging import LogBuffer

LEVEL_STYLES = {
    "INFO": "dim white",
    "SUCCESS": "green",
    "WARNING": "yellow",
    "ERROR": "bold red",
}


def _fmt(value, digits: int = 4) -> str:
    if value is None:
        return "-"
    return f"{value:.{digits}f}"


class MarketMakerDashboard:
    """终端仪表盘：只读 session.snapshot()，不参与任何决策。"""

    def __init__(self, session, log_buffer: Optional[LogBuffer] = None):
        self.session = session
        self.log_buffer = log_buffer or session.log_buffer
        if self.log_buffer is None:
            self.log_buffer = LogBuffer()
            logging.getLogger("gate_mm").addHandler(self.log_buffer)

    def generate_header(self, snap) -> Panel:
        """顶部 KPI 横幅"""
        pnl = snap['total_pnl']
        color = "green" if pnl >= 0 else "red"
        sign = "+" if pnl >= 0 else "-"
        state = "🟢 RUNNING" if snap['state'] == "RUNNING" else "⚪ IDLE"

        started = snap.get('start_time')
        uptime = f"{int(time.time() - started)}s" if started and snap['state'] == "RUNNING" else "N/A"

        grid = Table.grid(expand=True)
        grid.add_column(justify="center", ratio=1)
        grid.add_column(justify="center", ratio=1)
        grid.add_column(justify="center", ratio=1)
        grid.add_row(
            f"[bold white]🚀 Gate MM[/bold white] | {state}\n[dim]{snap['config']}[/dim]",
            f"[bold yellow]💰 Balance: ${snap['balance']:,.2f}[/bold yellow]\n[dim]🕒 uptime {uptime}[/dim]",
            f"[{color}]📈 PnL: {sign}${abs(pnl):.4f}[/{color}]\n[dim]🎯 {snap['profit_target'] or 'target off'}[/dim]",
        )
        return Panel(grid, style="on blue")

    def generate_position_panel(self, snap) -> Panel:
        table = Table(box=box.SIMPLE_HEAD, expand=True, show_header=False)
        table.add_column("Field", style="cyan bold")
        table.add_column("Value", justify="right")

        table.add_row("Price", _fmt(snap['price']))
        table.add_row("Best Bid / Ask", f"{_fmt(snap['best_bid'])} / {_fmt(snap['best_ask'])}")
        table.add_row("Reserve", _fmt(snap['reserve_price']))
        table.add_row("Target Bid / Ask", f"{_fmt(snap['target_bid'])} / {_fmt(snap['target_ask'])}")
        table.add_row("Long / Short", f"{snap['long']} / {snap['short']}")
        table.add_row("Inventory", f"{snap['inventory']}")
        table.add_row("Realized PnL", _fmt(snap['realized_pnl']))
        table.add_row("Unrealized PnL", _fmt(snap['unrealized_pnl']))
        table.add_row("σ (EWMA)", _fmt(snap['sigma_estimate'], 6))
        return Panel(table, title="💼 Position & Quote")

    def generate_activity_panel(self, snap) -> Panel:
        table = Table(box=box.SIMPLE_HEAD, expand=True)
        table.add_column("Side", style="bold white")
        table.add_column("Price", justify="right", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("RO", justify="center", style="dim white")
        for o in snap['open_orders']:
            size = getattr(o, 'remaining_size', None)
            if size is None:
                size = o.size
            table.add_row(o.side.upper(), _fmt(o.price), f"{size}", "✓" if o.reduce_only else "")

        chart = list(self.session.chart)[-5:]
        tail = "\n".join(
            f"[dim]{p.time}[/dim] {p.price:.4f}  [green]{_fmt(p.bid)}[/green] / [red]{_fmt(p.ask)}[/red]"
            for p in chart
        ) or "No ticks yet"

        group = Group(
            table,
            Text("\n📈 Recent Ticks:", style="bold underline"),
            Text.from_markup(tail),
        )
        return Panel(group, title="⚡ Orders & Chart")

    def generate_logs_panel(self) -> Panel:
        """日志"""
        text = Text()
        for entry in self.log_buffer.recent(8):
            style = LEVEL_STYLES.get(entry.level, "dim white")
            text.append(f"[{entry.timestamp}] {entry.level}: {entry.message}\n", style=style)
        return Panel(text, title="📜 System Logs", box=box.SIMPLE)

    def make_layout(self) -> Layout:
        snap = self.session.snapshot()
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=4),
            Layout(name="body", ratio=1),
            Layout(name="footer", size=10),
        )
        layout["body"].split_row(
            Layout(name="position", ratio=5),
            Layout(name="side", ratio=5),
        )

        layout["header"].update(self.generate_header(snap))
        layout["position"].update(self.generate_position_panel(snap))
        layout["side"].update(self.generate_activity_panel(snap))
        layout["footer"].update(self.generate_logs_panel())
        return layout

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        """纯渲染循环，直到 stop_event 被设置"""
        stop_event = stop_event or asyncio.Event()
        with Live(self.make_layout(), refresh_per_second=4, screen=True) as live:
            while not stop_event.is_set():
                live.update(self.make_layout())
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=0.25)
                except asyncio.TimeoutError:
                    pass


async def run_dashboard(session, stop_event: Optional[asyncio.Event] = None):
    await MarketMakerDashboard(session).run(stop_event)


def render_once(session) -> str:
    """Render one frame to text (used by tests and for quick inspection)."""
    import io

    from rich.console import Console

    console = Console(width=140, record=True, file=io.StringIO())
    console.print(MarketMakerDashboard(session).make_layout(), height=40)
    return console.export_text()

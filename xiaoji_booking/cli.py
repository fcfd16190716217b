from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .bind_codes import BindCodeService
from .errors import BookingError
from .exporter import DataExporter
from .merchants import MerchantService
from .models import ORDER_STATUS_LABELS
from .orders import OrderFilters, OrderService
from .regions import RegionService
from .stats import StatsService
from .templates import TemplateService


def _fmt_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(int(value)).strftime("%Y-%m-%d %H:%M")


def _text(value: Any) -> str:
    return "-" if value in (None, "") else str(value)


def cmd_bindcode(console: Console, args) -> None:
    service = BindCodeService()
    if args.action == "create":
        record = service.create_bind_code(args.description)
        console.print(f"[green]✅ 绑定码已创建: [bold]{record['code']}[/bold][/green]")
        return
    if args.action == "delete":
        if args.id is None:
            console.print("[red]请使用 --id 指定要删除的绑定码[/red]")
            return
        if args.force:
            result = service.force_delete_bind_code(args.id)
            console.print(f"[green]已强制删除绑定码 {result['code']}，同时删除商家 {len(result['deletedMerchants'])} 个[/green]")
        else:
            service.delete_bind_code(args.id)
            console.print(f"[green]已删除绑定码 {args.id}[/green]")
        return

    codes = service.list_bind_codes()
    if not codes:
        console.print("[yellow]暂无绑定码[/yellow]")
        return
    table = Table(title="绑定码列表", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("绑定码")
    table.add_column("描述")
    table.add_column("状态")
    table.add_column("使用者")
    table.add_column("创建时间")
    for code in codes:
        table.add_row(
            str(code["id"]),
            code["code"],
            _text(code.get("description")),
            "[red]已使用[/red]" if code["used"] else "[green]可用[/green]",
            _text(code.get("merchant_name") or code.get("used_by")),
            _fmt_ts(code.get("created_at")),
        )
    console.print(table)
    stats = service.stats()
    console.print(f"共 {stats['total']} 个，已使用 {stats['used']} 个，可用 {stats['available']} 个")


def cmd_merchant(console: Console, args) -> None:
    service = MerchantService()
    if args.action in ("status", "delete") and args.id is None:
        console.print("[red]请使用 --id 指定商家[/red]")
        return
    if args.action == "status":
        merchant = service.set_status(args.id, args.status) if args.status else service.toggle_status(args.id)
        console.print(f"[green]商家 {merchant['teacher_name']} 当前状态: {merchant['status']}[/green]")
        return
    if args.action == "delete":
        service.delete_merchant(args.id)
        console.print(f"[green]已删除商家 {args.id} 及其关联数据[/green]")
        return

    merchants = service.list_merchants(args.status)
    if not merchants:
        console.print("[yellow]暂无商家[/yellow]")
        return
    table = Table(title="商家列表", show_header=True, header_style="bold magenta")
    for column in ("ID", "艺名", "用户名", "地区", "价格", "状态", "已绑定", "频道点击"):
        table.add_column(column)
    for merchant in merchants:
        table.add_row(
            str(merchant["id"]),
            _text(merchant.get("teacher_name")),
            f"@{merchant['username']}" if merchant.get("username") else "-",
            _text(merchant.get("region_name")),
            f"{_text(merchant.get('price1'))}p / {_text(merchant.get('price2'))}pp",
            "[green]active[/green]" if merchant["status"] == "active" else "[yellow]suspended[/yellow]",
            "✅" if merchant.get("user_id") else "❌",
            str(merchant.get("channel_clicks") or 0),
        )
    console.print(table)


def cmd_region(console: Console, args) -> None:
    service = RegionService()
    if args.action == "add":
        if not args.name:
            console.print("[red]请使用 --name 指定地区名称[/red]")
            return
        region = service.create_region(args.name, args.sort_order)
        console.print(f"[green]已添加地区 {region['name']} (ID {region['id']})[/green]")
        return
    table = Table(title="地区列表", show_header=True, header_style="bold magenta")
    table.add_column("ID")
    table.add_column("名称")
    table.add_column("排序")
    table.add_column("启用")
    for region in service.list_regions(active_only=False):
        table.add_row(str(region["id"]), region["name"], str(region["sort_order"]), "✅" if region["active"] else "❌")
    console.print(table)


def cmd_orders(console: Console, args) -> None:
    result = OrderService().list_orders(OrderFilters(status=args.status), page=1, page_size=args.limit)
    table = Table(title=f"订单列表（共 {result['total']} 条）", show_header=True, header_style="bold magenta")
    for column in ("ID", "用户", "老师", "课程", "价格", "状态", "创建时间"):
        table.add_column(column)
    for order in result["orders"]:
        table.add_row(
            str(order["id"]),
            f"{_text(order.get('user_name'))} {order.get('user_username') or ''}".strip(),
            _text(order.get("teacher_name")),
            _text(order.get("course_content")),
            _text(order.get("actual_price") or order.get("price_range")),
            ORDER_STATUS_LABELS.get(order["real_status"], order["real_status"]),
            _fmt_ts(order.get("created_at")),
        )
    console.print(table)


def cmd_stats(console: Console) -> None:
    service = StatsService()
    stats = service.optimized_stats()
    dashboard = service.dashboard_stats()
    table = Table(title="📊 运营概览", show_header=False)
    table.add_column("指标", style="cyan")
    table.add_column("数值", style="bold")
    rows: List[List[str]] = [
        ["商家总数", str(dashboard["totalMerchants"])],
        ["活跃商家", str(dashboard["activeMerchants"])],
        ["已绑定商家", str(dashboard["boundMerchants"])],
        ["订单总数", str(stats["totalOrders"])],
        ["已预约", str(stats["bookedOrders"])],
        ["已完成", str(stats["completedOrders"])],
        ["完成率", f"{stats['completionRate']}%"],
        ["平均价格", str(stats["avgPrice"])],
        ["用户平均评分", str(stats["avgUserRating"])],
        ["商家平均评分", str(stats["avgMerchantRating"])],
        ["今日交互", str(dashboard["todayInteractions"])],
    ]
    for row in rows:
        table.add_row(*row)
    console.print(table)


def cmd_rankings(console: Console, args) -> None:
    service = StatsService()
    if args.users:
        rows: List[Dict[str, Any]] = service.user_rankings(args.limit)
        table = Table(title="🏆 用户排行榜", show_header=True, header_style="bold magenta")
        for column in ("#", "用户", "评价数", "平均总评", "平均细项"):
            table.add_column(column)
        for row in rows:
            table.add_row(
                str(row["rank"]),
                f"{_text(row.get('user_name'))} {row.get('user_username') or ''}".strip(),
                str(row["total_evaluations"]),
                _text(row.get("avg_overall_score")),
                _text(row.get("avg_detail_score")),
            )
    else:
        rows = service.merchant_rankings(args.limit)
        table = Table(title="🏆 老师排行榜", show_header=True, header_style="bold magenta")
        for column in ("#", "老师", "地区", "评价数", "平均总评", "平均细项"):
            table.add_column(column)
        for row in rows:
            table.add_row(
                str(row["rank"]),
                _text(row.get("teacher_name")),
                _text(row.get("region_name")),
                str(row["total_evaluations"]),
                _text(row.get("avg_overall_score")),
                _text(row.get("avg_detail_score")),
            )
    console.print(table)


def cmd_export(console: Console, args) -> None:
    exporter = DataExporter()
    if args.command == "export":
        with console.status("正在导出数据..."):
            result = exporter.export_all_data(args.format)
        console.print(
            f"[green]✅ 导出完成: {result.filename} ({result.formatted_size}，{result.tables} 张表，{result.records} 条记录)[/green]"
        )
    elif args.command == "export-history":
        history = exporter.export_history()
        if not history:
            console.print("[yellow]暂无导出记录[/yellow]")
            return
        table = Table(title="导出历史", show_header=True, header_style="bold magenta")
        table.add_column("文件名")
        table.add_column("大小")
        table.add_column("时间")
        for item in history:
            table.add_row(item["filename"], item["formattedSize"], item["created"])
        console.print(table)
    else:
        removed = exporter.cleanup_exports(args.keep)
        console.print(f"[green]已删除 {removed} 个旧导出文件[/green]")


def cmd_task(console: Console, args) -> None:
    service = TemplateService()
    if args.action == "run":
        if args.id is None:
            console.print("[red]请使用 --id 指定任务[/red]")
            return
        from .notification import close_notifier, get_notifier  # pylint: disable=import-outside-toplevel
        from .scheduler import TemplateScheduler  # pylint: disable=import-outside-toplevel

        async def _run() -> bool:
            try:
                return await TemplateScheduler(get_notifier()).run_task(args.id)
            finally:
                await close_notifier()

        if asyncio.run(_run()):
            console.print(f"[green]定时任务 {args.id} 已执行[/green]")
        else:
            console.print(f"[red]定时任务 {args.id} 执行失败，请查看日志[/red]")
        return

    table = Table(title="定时任务", show_header=True, header_style="bold magenta")
    for column in ("ID", "名称", "模板", "聊天", "规则", "顺序", "启用", "上次执行", "下次执行"):
        table.add_column(column)
    for task in service.list_tasks():
        table.add_row(
            str(task["id"]),
            task["name"],
            _text(task.get("template_name")),
            str(task["chat_id"]),
            f"{task['schedule_type']} {task['schedule_time']}",
            f"{task['sequence_order']}/{task['sequence_delay']}s",
            "✅" if task["active"] else "❌",
            _fmt_ts(task.get("last_run")),
            _fmt_ts(task.get("next_run")),
        )
    console.print(table)


def run_cli(args) -> None:
    console = Console()
    try:
        if args.command == "bindcode":
            cmd_bindcode(console, args)
        elif args.command == "merchant":
            cmd_merchant(console, args)
        elif args.command == "region":
            cmd_region(console, args)
        elif args.command == "orders":
            cmd_orders(console, args)
        elif args.command == "stats":
            cmd_stats(console)
        elif args.command == "rankings":
            cmd_rankings(console, args)
        elif args.command in ("export", "export-history", "export-cleanup"):
            cmd_export(console, args)
        elif args.command == "task":
            cmd_task(console, args)
        elif args.command == "bot":
            from bot.bot import main as run_bot  # pylint: disable=import-outside-toplevel

            run_bot()
        elif args.command == "api":
            from web_api.main import main as run_api  # pylint: disable=import-outside-toplevel

            run_api(host=args.host, port=args.port, reload=args.reload)
        else:
            console.print("[yellow]Unknown command[/yellow]")
    except BookingError as exc:
        console.print(f"[red]❌ {exc}[/red]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="小鸡预约系统 管理命令行")
    sub = parser.add_subparsers(dest="command")

    p_bindcode = sub.add_parser("bindcode", help="绑定码管理")
    p_bindcode.add_argument("action", choices=["create", "list", "delete"], nargs="?", default="list")
    p_bindcode.add_argument("--description", type=str, help="绑定码描述")
    p_bindcode.add_argument("--id", type=int, help="绑定码 ID")
    p_bindcode.add_argument("--force", action="store_true", help="已使用的绑定码连同商家一起删除")

    p_merchant = sub.add_parser("merchant", help="商家管理")
    p_merchant.add_argument("action", choices=["list", "status", "delete"], nargs="?", default="list")
    p_merchant.add_argument("--id", type=int, help="商家 ID")
    p_merchant.add_argument("--status", choices=["active", "suspended"], help="筛选或设置状态，不填时切换")

    p_region = sub.add_parser("region", help="地区管理")
    p_region.add_argument("action", choices=["list", "add"], nargs="?", default="list")
    p_region.add_argument("--name", type=str, help="地区名称")
    p_region.add_argument("--sort-order", type=int, default=0, help="排序值")

    p_orders = sub.add_parser("orders", help="查看订单")
    p_orders.add_argument("--status", type=str, help="订单状态")
    p_orders.add_argument("--limit", type=int, default=20, help="显示条数")

    sub.add_parser("stats", help="运营数据概览")

    p_rankings = sub.add_parser("rankings", help="排行榜")
    p_rankings.add_argument("--users", action="store_true", help="显示用户排行榜")
    p_rankings.add_argument("--limit", type=int, default=20, help="显示条数")

    p_export = sub.add_parser("export", help="导出全部数据")
    p_export.add_argument("--format", choices=["json", "csv"], default="json")
    sub.add_parser("export-history", help="查看导出历史")
    p_cleanup = sub.add_parser("export-cleanup", help="清理旧导出文件")
    p_cleanup.add_argument("--keep", type=int, default=5, help="保留最近的文件数")

    p_task = sub.add_parser("task", help="定时任务")
    p_task.add_argument("action", choices=["list", "run"], nargs="?", default="list")
    p_task.add_argument("--id", type=int, help="任务 ID")

    sub.add_parser("bot", help="启动 Telegram 机器人")
    p_api = sub.add_parser("api", help="启动管理后台 API")
    p_api.add_argument("--host", type=str, default=None)
    p_api.add_argument("--port", type=int, default=None)
    p_api.add_argument("--reload", action="store_true")

    return parser

"""
CLI 命令：lifeos-plan
生成 / 查看 / 调整每日执行链计划
"""
import click
import sys
from datetime import date
from pathlib import Path
from typing import Optional

# 添加项目根目录到 sys.path，以便导入 planner 模块
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from planner.anchor_service import CalendarAnchorProvider, JsonFileCalendarSource, StaticAnchorProvider
from planner.exceptions import PlannerError
from planner.models import ActivityType, DailyPlan, Location
from planner.plan_builder import PlanBuilder
from planner.plan_store import JsonPlanStore

DEFAULT_USER = "local-user"


def _builder(store_path: Optional[str], calendar: Optional[str] = None) -> PlanBuilder:
    store = JsonPlanStore(Path(store_path) if store_path else None)
    if calendar:
        provider = CalendarAnchorProvider(JsonFileCalendarSource(Path(calendar)))
    else:
        provider = StaticAnchorProvider()
    return PlanBuilder(store=store, anchor_provider=provider)


def _parse_day(raw: Optional[str]) -> date:
    return date.fromisoformat(raw) if raw else date.today()


def _echo_plan(plan: DailyPlan) -> None:
    click.echo(f"\n📅 {plan.plan_date}  (plan {plan.id[:8]})")
    if plan.status != "active":
        click.echo(f"⚠️ status: {plan.status}")
    click.echo(f"⏰ wake {plan.wake_time:%H:%M} → sleep {plan.sleep_time:%H:%M}  energy: {plan.energy_state.value}")
    if plan.wake_ramp and not plan.wake_ramp.skipped:
        click.echo(f"\n🌅 Wake ramp ({len(plan.wake_ramp.steps)} steps)")
        for step in plan.wake_ramp.steps:
            click.echo(f"  {step.start_time:%H:%M}-{step.end_time:%H:%M}  {step.name}")

    for chain in plan.chains:
        compressed = " ⚠️ compressed" if chain.metadata.get("compressed") else ""
        click.echo(
            f"\n🔗 {chain.anchor.title} @ {chain.anchor.start:%H:%M} "
            f"[{chain.status.value}]{compressed}"
        )
        for step in chain.steps:
            marker = "🚪" if step.role.value == "exit-gate" else "-"
            click.echo(
                f"  {marker} {step.start_time:%H:%M}-{step.end_time:%H:%M}  "
                f"{step.name} ({step.duration_minutes}m)  id={step.step_id}"
            )

    meals = [b for b in plan.time_blocks if b.activity_type == ActivityType.MEAL]
    if meals:
        click.echo("\n🍽️ Meals:")
        for block in meals:
            click.echo(f"  {block.start_time:%H:%M}-{block.end_time:%H:%M}  {block.activity_name}")

    if plan.home_intervals:
        click.echo("\n🏠 At home:")
        for interval in plan.home_intervals:
            click.echo(f"  {interval.start:%H:%M}-{interval.end:%H:%M}")


@click.group()
def plan():
    """每日执行链计划"""
    pass


@plan.command()
@click.option("--wake", "wake_time", required=True, help="起床时间 (ISO, e.g. 2026-10-19T07:30)")
@click.option("--sleep", "sleep_time", required=True, help="睡觉时间 (ISO)")
@click.option("--energy", type=click.Choice(["low", "medium", "high"]), default="medium")
@click.option("--date", "plan_date", default=None, help="计划日期 YYYY-MM-DD (默认取起床日期)")
@click.option("--anchor-title", default=None, help="手动锚点标题")
@click.option("--anchor-start", default=None, help="手动锚点开始时间 (ISO)")
@click.option("--anchor-end", default=None, help="手动锚点结束时间 (ISO)")
@click.option("--anchor-type", default=None, help="class | seminar | workshop | appointment | other")
@click.option("--anchor-location", default=None)
@click.option("--from", "origin", default=None, help="当前所在位置")
@click.option("--calendar", default=None, type=click.Path(exists=True, dir_okay=False))
@click.option("--user", default=DEFAULT_USER)
@click.option("--store", "store_path", default=None, help="计划存储 JSON 路径")
def generate(
    wake_time, sleep_time, energy, plan_date, anchor_title, anchor_start, anchor_end,
    anchor_type, anchor_location, origin, calendar, user, store_path
):
    """生成 (或替换) 当天计划"""
    builder = _builder(store_path, calendar)
    manual = None
    if anchor_title:
        manual = {
            "title": anchor_title,
            "start_time": anchor_start,
            "end_time": anchor_end,
            "anchor_type": anchor_type,
            "location": anchor_location,
        }
    try:
        plan_input = builder.validate_plan_request(
            user, wake_time, sleep_time, energy,
            plan_date=date.fromisoformat(plan_date) if plan_date else None,
        )
        result = builder.generate_daily_plan(
            plan_input,
            current_location=Location(name=origin) if origin else None,
            manual_anchor=builder.validate_manual_anchor(manual),
        )
    except PlannerError as e:
        click.echo(f"❌ [{e.code}] {e.get_user_message()}", err=True)
        sys.exit(1)

    click.echo("✅ 计划已生成")
    _echo_plan(result)


@plan.command()
@click.option("--date", "plan_date", default=None)
@click.option("--user", default=DEFAULT_USER)
@click.option("--store", "store_path", default=None)
def show(plan_date, user, store_path):
    """查看当天计划"""
    builder = _builder(store_path)
    result = builder.get_plan_for_date(user, _parse_day(plan_date))
    if result is None:
        click.echo("📭 当天还没有计划，先运行 'lifeos-plan generate'")
        return
    _echo_plan(result)


@plan.command()
@click.argument("source_step_id")
@click.argument("target_step_id")
@click.option("--date", "plan_date", default=None)
@click.option("--user", default=DEFAULT_USER)
@click.option("--store", "store_path", default=None)
def reorder(source_step_id, target_step_id, plan_date, user, store_path):
    """把 SOURCE 步骤移动到 TARGET 的位置，链截止时间不变"""
    builder = _builder(store_path)
    try:
        result = builder.reorder_step(user, _parse_day(plan_date), source_step_id, target_step_id)
    except PlannerError as e:
        click.echo(f"❌ [{e.code}] {e.get_user_message()}", err=True)
        sys.exit(1)
    click.echo("🔀 已重新排列")
    _echo_plan(result)


@plan.command()
@click.option("--date", "plan_date", default=None)
@click.option("--user", default=DEFAULT_USER)
@click.option("--store", "store_path", default=None)
def degrade(plan_date, user, store_path):
    """落后时精简计划：跳过可选步骤，保留出行、锚点和用餐"""
    builder = _builder(store_path)
    try:
        result = builder.degrade_plan(user, _parse_day(plan_date))
    except PlannerError as e:
        click.echo(f"❌ [{e.code}] {e.get_user_message()}", err=True)
        sys.exit(1)
    click.echo("🪶 已精简计划")
    _echo_plan(result)


if __name__ == "__main__":
    plan()

"""
Configuration Manager for the daily planner.

集中管理调度器常量和配置参数。
所有经验值必须显式声明并可配置，组件通过构造参数注入，默认使用全局单例。

使用方式:
    from planner.config_manager import config
    travel = config.DEFAULT_TRAVEL_MINUTES
"""
from dataclasses import dataclass
from pathlib import Path

import yaml

from planner.exceptions import ConfigError


CONFIG_DIR = Path(__file__).parent.parent / "config"
RUNTIME_CONFIG_PATH = CONFIG_DIR / "runtime.yaml"


@dataclass
class SchedulerConfig:
    """
    调度器运行时常量配置。

    所有值均为经验值，可根据用户实际情况调整。
    调整建议已在注释中说明。
    """

    # === 执行链生成 ===

    # 默认单程出行时间 (分钟)
    # 经验值依据：城市内公交/步行的典型单程耗时
    # 使用场景：锚点无地点、估算服务失败或返回非正数
    DEFAULT_TRAVEL_MINUTES: int = 30

    # 返程后恢复时间 (分钟)
    # 经验值依据：到家后换衣、喝水、放下包的最短缓冲
    RECOVERY_MINUTES: int = 10

    # 长锚点 (>= LONG_ANCHOR_MINUTES) 的恢复时间 (分钟)
    # 调整建议：体力消耗大的用户可增至 30
    RECOVERY_LONG_MINUTES: int = 20
    LONG_ANCHOR_MINUTES: int = 120

    # 单个步骤最短时长 (分钟)，压缩时的下限
    MIN_STEP_MINUTES: int = 1

    # 各锚点类型的基础准备时间 (分钟)
    PREP_MINUTES_BY_TYPE: dict = None

    # 精力 (1-5) 对准备时间的倍率，低精力需要更多时间
    ENERGY_PREP_MULTIPLIERS: dict = None

    # === 执行链重建 ===

    # 从时间块重建时合成信封使用的固定出行/恢复时间 (分钟)
    RECONSTRUCTION_TRAVEL_MINUTES: int = 30
    RECONSTRUCTION_RECOVERY_MINUTES: int = 10

    # 找不到承诺块时，合成锚点相对最后一步结束的偏移与时长 (分钟)
    # 经验值依据：准备结束后通常还有出行与等待
    FALLBACK_ANCHOR_OFFSET_MINUTES: int = 75
    FALLBACK_ANCHOR_DURATION_MINUTES: int = 60
    FALLBACK_ANCHOR_TITLE: str = "Planned commitment"

    # === 计划生成 ===

    # 计划起点按 N 分钟向上取整
    PLAN_START_ROUNDING_MINUTES: int = 5

    # 并发生成冲突后重读胜出方计划的退避间隔 (秒)
    DUPLICATE_RETRY_DELAYS: list = None

    # 精力状态 -> 1-5 精力值
    ENERGY_LEVELS: dict = None

    # 默认当前位置 (未提供时)
    DEFAULT_LOCATION_NAME: str = "Home"

    # === 唤醒缓冲 ===

    # 每种精力状态的唤醒步骤 (名称, 基础分钟)，按比例铺满 [起点, 起床时间)
    # 经验值依据：低精力需要更多、更温和的过渡步骤
    WAKE_RAMP_PROFILES: dict = None

    # 唤醒缓冲最长时长 (分钟)，凌晨或前一晚生成时起点不早于 起床时间 - 上限
    # 经验值依据：各档位 profile 的基础分钟总和
    WAKE_RAMP_MAX_MINUTES: dict = None

    # === 用餐安排 ===

    # 用餐窗口 (HH:MM, HH:MM)，当前时间已过窗口结束则跳过该餐
    MEAL_WINDOWS: dict = None

    # 无锚点时的默认用餐时间与各餐时长 (分钟)
    MEAL_DEFAULT_TIMES: dict = None
    MEAL_DURATIONS: dict = None

    # 两餐之间最短间隔 (上一餐结束到下一餐开始，分钟)
    MIN_MEAL_GAP_MINUTES: int = 180

    # 早餐在起床后 N 分钟；起床晚于 LATE_WAKE_TIME 时无锚点也按此计算
    BREAKFAST_AFTER_WAKE_MINUTES: int = 45
    LATE_WAKE_TIME: str = "09:00"

    # 锚点结束后 N 分钟用餐；午餐看中午前结束的锚点，晚餐看下午后结束的锚点
    MEAL_AFTER_ANCHOR_MINUTES: int = 30
    LUNCH_ANCHOR_CUTOFF: str = "12:00"
    LUNCH_FALLBACK_TIME: str = "12:30"
    DINNER_ANCHOR_CUTOFF: str = "15:00"

    # 目标时间冲突时前后搜索的范围与步长 (分钟)
    MEAL_SLOT_SEARCH_MINUTES: int = 30
    MEAL_SLOT_STEP_MINUTES: int = 5

    # === 位置状态 ===

    # 适合安排用餐的最短在家区间 (分钟)
    MIN_MEAL_INTERVAL_MINUTES: int = 30

    # === 锚点分类 ===

    # 按优先级排列的类型关键词 (workshop > class > seminar > appointment)
    ANCHOR_TYPE_KEYWORDS: dict = None

    # === 外部服务 ===

    # 出行时间估算服务地址，为空时使用固定估算
    TRAVEL_SERVICE_URL: str = ""
    TRAVEL_SERVICE_TIMEOUT: float = 5.0

    def __post_init__(self):
        if self.PREP_MINUTES_BY_TYPE is None:
            self.PREP_MINUTES_BY_TYPE = {
                "class": 15,
                "seminar": 25,
                "workshop": 25,
                "appointment": 15,
                "other": 15,
            }
        if self.ENERGY_PREP_MULTIPLIERS is None:
            self.ENERGY_PREP_MULTIPLIERS = {
                1: 1.3,
                2: 1.15,
                3: 1.0,
                4: 0.9,
                5: 0.8,
            }
        if self.DUPLICATE_RETRY_DELAYS is None:
            self.DUPLICATE_RETRY_DELAYS = [0.05, 0.1, 0.15]
        if self.ENERGY_LEVELS is None:
            self.ENERGY_LEVELS = {"low": 2, "medium": 3, "high": 4}
        if self.WAKE_RAMP_PROFILES is None:
            self.WAKE_RAMP_PROFILES = {
                "low": [
                    ["Gentle alarm", 20],
                    ["Water and daylight", 10],
                    ["Stretch in bed", 25],
                    ["Bathroom", 20],
                    ["Slow start buffer", 45],
                ],
                "medium": [
                    ["Alarm", 15],
                    ["Water and daylight", 15],
                    ["Stretch", 20],
                    ["Bathroom", 40],
                ],
                "high": [
                    ["Alarm", 15],
                    ["Water and daylight", 20],
                    ["Bathroom", 40],
                ],
            }
        if self.WAKE_RAMP_MAX_MINUTES is None:
            self.WAKE_RAMP_MAX_MINUTES = {"low": 120, "medium": 90, "high": 75}
        if self.MEAL_WINDOWS is None:
            self.MEAL_WINDOWS = {
                "breakfast": ["06:30", "11:30"],
                "lunch": ["11:30", "15:30"],
                "dinner": ["17:00", "21:30"],
            }
        if self.MEAL_DEFAULT_TIMES is None:
            self.MEAL_DEFAULT_TIMES = {"breakfast": "09:30", "lunch": "13:00", "dinner": "19:00"}
        if self.MEAL_DURATIONS is None:
            self.MEAL_DURATIONS = {"breakfast": 15, "lunch": 30, "dinner": 45}
        if self.ANCHOR_TYPE_KEYWORDS is None:
            self.ANCHOR_TYPE_KEYWORDS = {
                "workshop": ["workshop", "lab", "practical"],
                "class": ["class", "lecture", "tutorial", "module"],
                "seminar": ["seminar", "discussion", "colloquium"],
                "appointment": ["appointment", "doctor", "dentist", "gp", "interview", "meeting"],
            }
        # 整数 key 在 YAML 中可能被写成字符串
        self.ENERGY_PREP_MULTIPLIERS = {
            int(k): float(v) for k, v in self.ENERGY_PREP_MULTIPLIERS.items()
        }
        self.validate()

    def validate(self) -> None:
        if self.DEFAULT_TRAVEL_MINUTES <= 0:
            raise ConfigError("DEFAULT_TRAVEL_MINUTES must be positive", str(RUNTIME_CONFIG_PATH))
        if self.MIN_STEP_MINUTES < 1:
            raise ConfigError("MIN_STEP_MINUTES must be at least 1", str(RUNTIME_CONFIG_PATH))
        for state in ("low", "medium", "high"):
            if not self.WAKE_RAMP_PROFILES.get(state):
                raise ConfigError(f"WAKE_RAMP_PROFILES is missing '{state}'", str(RUNTIME_CONFIG_PATH))
        for meal in ("breakfast", "lunch", "dinner"):
            if meal not in self.MEAL_WINDOWS or meal not in self.MEAL_DURATIONS:
                raise ConfigError(f"Meal settings are missing '{meal}'", str(RUNTIME_CONFIG_PATH))

    def energy_level(self, energy_state: str) -> int:
        return int(self.ENERGY_LEVELS.get(str(energy_state), 3))


def _load_runtime_config(path: Path = RUNTIME_CONFIG_PATH) -> dict:
    """加载运行时配置覆盖（如果存在）。"""
    if not path.exists():
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError):
        return {}


def get_config(path: Path = RUNTIME_CONFIG_PATH) -> SchedulerConfig:
    """
    获取调度器配置实例。

    优先级：runtime.yaml > 默认值
    """
    overrides = _load_runtime_config(path)
    known = {k: v for k, v in overrides.items() if k in SchedulerConfig.__dataclass_fields__}
    return SchedulerConfig(**known)


# 全局配置实例（单例模式）
config = get_config()

"""
Daily planner 异常定义模块。

定义调度器中所有自定义异常的层次结构：
- PlannerError: 基类，所有已知错误 (带 code，供 HTTP 层映射)
- ConfigError: 配置文件错误
- InvalidPlanInputError: 计划输入非法 (时间区间 / 精力状态 / 手动锚点)
- StaleTimeBlockReferenceError: 引用了已被重新生成替换的时间块
- DuplicatePlanError / PlanConflictError: 同一用户同一天的计划冲突
- ForbiddenMetadataFieldError: 元数据补丁试图改写身份字段
"""
from typing import Optional


class PlannerError(Exception):
    """调度器基础异常类。

    所有系统内已知错误都继承自此类。
    code 是稳定的机器可读错误码，message 面向开发者，hint 面向用户。
    """

    code = "PLANNER_ERROR"

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        code: Optional[str] = None
    ):
        """
        Args:
            message: 错误描述
            hint: 对用户的操作建议
            code: 覆盖默认错误码
        """
        super().__init__(message)
        self.message = message
        self.hint = hint
        if code:
            self.code = code

    def get_user_message(self) -> str:
        """返回用户友好的错误消息。"""
        if self.hint:
            return f"{self.message}\nHint: {self.hint}"
        return self.message

    def to_dict(self) -> dict:
        return {"error": self.message, "error_code": self.code, "hint": self.hint}


class ConfigError(PlannerError):
    """配置文件错误。

    当配置文件缺失、格式错误或内容非法时抛出。
    """

    code = "CONFIG_ERROR"

    def __init__(self, message: str, config_path: Optional[str] = None):
        hint = f"Check the config file: {config_path}" if config_path else "Check the config file format"
        super().__init__(message, hint)
        self.config_path = config_path


class InvalidPlanInputError(PlannerError):
    """计划输入非法。

    code 区分具体原因：
    INVALID_TIME_RANGE / INVALID_ENERGY_STATE / INVALID_MANUAL_ANCHOR /
    STEP_NOT_IN_SAME_CHAIN / MANUAL_ANCHOR_REQUIRED
    """

    code = "INVALID_PLAN_INPUT"


class ManualAnchorRequiredError(InvalidPlanInputError):
    """当天没有任何锚点，且调用方没有提供手动锚点。"""

    code = "MANUAL_ANCHOR_REQUIRED"

    def __init__(self, message: str = "No anchors found for this day. Add a manual anchor to generate a plan."):
        super().__init__(message, hint="Provide manual_anchor with title, start_time and end_time")


class StaleTimeBlockReferenceError(PlannerError):
    """引用的时间块已不存在 (通常是计划被重新生成后的旧 ID)。"""

    code = "STALE_TIME_BLOCK_REFERENCE"

    def __init__(self, reference: str, plan_id: Optional[str] = None):
        message = f"Time block '{reference}' was not found"
        if plan_id:
            message += f" in plan {plan_id}"
        super().__init__(message, hint="The plan was regenerated. Refresh and try again.")
        self.reference = reference
        self.plan_id = plan_id


class DuplicatePlanError(PlannerError):
    """存储层唯一约束 (user_id, plan_date) 冲突。"""

    code = "DUPLICATE_PLAN"

    def __init__(self, user_id: str, plan_date: str):
        super().__init__(f"A daily plan already exists for user {user_id} on {plan_date}")
        self.user_id = user_id
        self.plan_date = plan_date


class PlanConflictError(PlannerError):
    """并发生成冲突，且重试读取后仍未能拿到胜出方的计划。"""

    code = "DUPLICATE_PLAN"


class PlanNotFoundError(PlannerError):
    code = "PLAN_NOT_FOUND"


class ForbiddenMetadataFieldError(PlannerError):
    """元数据补丁包含身份字段 (id / user_id / plan_id)。"""

    code = "FORBIDDEN_METADATA_FIELD"

    def __init__(self, fields):
        names = ", ".join(sorted(fields))
        super().__init__(
            f"Metadata patch may not modify identity fields: {names}",
            hint="Remove identity fields from the patch",
        )
        self.fields = sorted(fields)


class TravelEstimationError(PlannerError):
    """出行时间估算服务不可用。调用方应降级为默认值。"""

    code = "TRAVEL_ESTIMATION_FAILED"


class CalendarUnavailableError(PlannerError):
    """日历来源不可用。调用方应降级为空锚点列表。"""

    code = "CALENDAR_UNAVAILABLE"

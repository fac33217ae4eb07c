"""
模板变量替换与条件表达式求值
"""
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

# 按顺序匹配，避免 "!=" 被识别为 "=="
_CONDITION_OPERATORS = ("!=", "==", " contains ")


def render_template(text: Optional[str], variables: Mapping[str, str]) -> str:
    """
    替换 {{name}} 占位符

    变量存在时替换为其值；不存在时保留原始占位符，不做猜测或默认值填充。
    """
    if not text:
        return text or ""

    def _replace(match: "re.Match") -> str:
        name = match.group(1).strip()
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def extract_variables(text: Optional[str]) -> List[str]:
    """提取模板中引用的变量名"""
    if not text:
        return []
    return [name.strip() for name in PLACEHOLDER_PATTERN.findall(text)]


def parse_condition(expression: str) -> Optional[Tuple[str, str, str]]:
    """
    解析条件表达式为 (左值, 运算符, 右值)

    无法识别时返回 None。
    """
    if not expression:
        return None
    for operator in _CONDITION_OPERATORS:
        if operator in expression:
            left, right = expression.split(operator, 1)
            left, right = left.strip(), right.strip()
            if not left:
                return None
            return left, operator.strip(), right
    return None


def evaluate_condition(expression: str, variables: Mapping[str, str]) -> bool:
    """
    求值条件表达式

    支持 ``==``、``!=`` 与 ``contains``，比较忽略大小写。左值为变量名（可写成 {{name}}），
    变量不存在时按字面量比较；右值两侧的引号会被去除。
    """
    parsed = parse_condition(expression)
    if parsed is None:
        return False

    left, operator, right = parsed
    left_name = left[2:-2].strip() if left.startswith("{{") and left.endswith("}}") else left
    left_value = str(variables.get(left_name, render_template(left, variables))).strip().lower()
    right_value = _strip_quotes(render_template(right, variables)).strip().lower()

    if operator == "==":
        return left_value == right_value
    if operator == "!=":
        return left_value != right_value
    return right_value in left_value


def flatten_payload(payload: Any, prefix: str = "") -> Dict[str, str]:
    """将触发数据展平为字符串键值对"""
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        return {prefix or "trigger_data": str(payload)}

    flat: Dict[str, str] = {}
    for key, value in payload.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten_payload(value, name))
        elif value is None:
            flat[name] = ""
        elif isinstance(value, (list, tuple)):
            flat[name] = ", ".join(str(item) for item in value)
        else:
            flat[name] = str(value)
    return flat


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value

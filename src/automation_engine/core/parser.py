"""
工作流解析器
"""
import json
import logging
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union
from uuid import uuid4

import yaml
from jsonschema import Draft7Validator

from ..exceptions import WorkflowParseError
from ..models.workflow import (
    ACTION_TYPES, TRIGGER_TYPES, Action, FailurePolicy, GeofenceTransition, LogLevel,
    MailCondition, MessageCondition, SummaryStyle, Trigger, Workflow, utcnow
)


logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"

_NESTED_ACTION_FIELDS = ("then_action", "else_action", "action")
_ENUM_FIELDS = {
    "on_failure": FailurePolicy,
    "style": SummaryStyle,
    "level": LogLevel,
}

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name", "actions"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "owner_id": {"type": "string"},
        "shared_with": {"type": "array", "items": {"type": "string"}},
        "enabled": {"type": "boolean"},
        "variables": {"type": "object"},
        "triggers": {"type": "array", "items": {"$ref": "#/definitions/trigger"}},
        "actions": {"type": "array", "items": {"$ref": "#/definitions/action"}},
        "created_at": {},
        "updated_at": {},
    },
    "additionalProperties": False,
    "definitions": {
        "trigger": {
            "type": "object",
            "required": ["type"],
            "properties": {
                "type": {"enum": sorted(TRIGGER_TYPES)},
                "condition": {"type": "object"},
            },
        },
        "action": {
            "type": "object",
            "required": ["type"],
            "properties": {
                "type": {"enum": sorted(ACTION_TYPES)},
                "then_action": {"anyOf": [{"type": "null"}, {"$ref": "#/definitions/action"}]},
                "else_action": {"anyOf": [{"type": "null"}, {"$ref": "#/definitions/action"}]},
                "action": {"anyOf": [{"type": "null"}, {"$ref": "#/definitions/action"}]},
                "timeout": {"type": ["number", "null"]},
            },
        },
    },
}


class WorkflowParser:
    """工作流解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.schema_validator = Draft7Validator(WORKFLOW_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Workflow:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            Workflow: 解析后的工作流对象
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if _looks_like_path(source) and Path(source).is_file():
                return self.parse_file(Path(source))
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> Workflow:
        """解析工作流文件"""
        return self.parse_dict(self.load_file(file_path))

    def load_file(self, file_path: Path) -> Dict[str, Any]:
        """读取 YAML/JSON 文件为字典"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parsers[suffix](content)

    def parse_string(self, content: str) -> Workflow:
        """解析工作流字符串（YAML 或 JSON）"""
        return self.parse_dict(self._parse_yaml(content))

    def parse_dict(self, data: Dict[str, Any]) -> Workflow:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        if 'workflow' in data:
            data = data['workflow']
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")

        errors = self.schema_errors(data)
        if errors:
            raise WorkflowParseError(f"Workflow schema validation failed: {'; '.join(errors)}")

        workflow = Workflow(
            id=data.get('id') or str(uuid4()),
            name=data.get('name', ''),
            description=data.get('description') or '',
            owner_id=data.get('owner_id', ''),
            shared_with=list(data.get('shared_with', [])),
            enabled=data.get('enabled', True),
            variables={str(k): "" if v is None else str(v) for k, v in data.get('variables', {}).items()},
            triggers=[
                self._parse_trigger(trigger_data, f"triggers[{index}]")
                for index, trigger_data in enumerate(data.get('triggers', []))
            ],
            actions=[
                self._parse_action(action_data, f"actions[{index}]")
                for index, action_data in enumerate(data.get('actions', []))
            ],
        )
        if data.get('created_at'):
            workflow.created_at = _parse_datetime(data['created_at'])
        if data.get('updated_at'):
            workflow.updated_at = _parse_datetime(data['updated_at'])

        logger.debug(f"Parsed workflow '{workflow.name}' with {workflow.action_count} actions")
        return workflow

    def schema_errors(self, data: Dict[str, Any]) -> List[str]:
        """JSON Schema 校验，返回 'path: message' 形式的错误"""
        errors = []
        for error in self.schema_validator.iter_errors(data):
            path = "/".join(str(part) for part in error.absolute_path) or "<root>"
            errors.append(f"{path}: {error.message}")
        return errors

    # -- 序列化 ---------------------------------------------------------------

    def to_dict(self, workflow: Workflow) -> Dict[str, Any]:
        """工作流转换为字典"""
        return {
            "id": workflow.id,
            "name": workflow.name,
            "description": workflow.description,
            "owner_id": workflow.owner_id,
            "shared_with": list(workflow.shared_with),
            "enabled": workflow.enabled,
            "variables": dict(workflow.variables),
            "triggers": [_dataclass_to_dict(trigger) for trigger in workflow.triggers],
            "actions": [_dataclass_to_dict(action) for action in workflow.actions],
            "created_at": workflow.created_at.isoformat(),
            "updated_at": workflow.updated_at.isoformat(),
        }

    def serialize(self, workflow: Workflow, fmt: str = "yaml") -> str:
        """序列化为 YAML 或 JSON"""
        return self._dump({"workflow": self.to_dict(workflow)}, fmt)

    def export_workflows(self, workflows: Iterable[Workflow]) -> Dict[str, Any]:
        """导出为导入/导出文档"""
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": utcnow().isoformat(),
            "workflows": [self.to_dict(workflow) for workflow in workflows],
        }

    def dump_export(self, workflows: Iterable[Workflow], fmt: str = "json") -> str:
        return self._dump(self.export_workflows(workflows), fmt)

    def import_workflows(
        self,
        document: Union[str, Dict[str, Any]],
        regenerate_ids: bool = False
    ) -> List[Workflow]:
        """从导入/导出文档恢复工作流"""
        if isinstance(document, str):
            document = self._parse_yaml(document)
        if not isinstance(document, dict) or "workflows" not in document:
            raise WorkflowParseError("Import document must contain a 'workflows' list")

        version = str(document.get("version", ""))
        if version != EXPORT_FORMAT_VERSION:
            raise WorkflowParseError(f"Unsupported export format version: {version or '<missing>'}")

        workflows = []
        for data in document["workflows"]:
            workflow = self.parse_dict(data)
            if regenerate_ids:
                workflow.id = str(uuid4())
                workflow.created_at = workflow.updated_at = utcnow()
            workflows.append(workflow)

        logger.info(f"Imported {len(workflows)} workflows")
        return workflows

    # -- 内部方法 -------------------------------------------------------------

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")
        if not isinstance(data, dict):
            raise WorkflowParseError("Failed to parse workflow: document is not a mapping")
        return data

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_trigger(self, data: Dict[str, Any], path: str) -> Trigger:
        """解析触发器"""
        trigger_cls = TRIGGER_TYPES[data["type"]]
        kwargs = self._collect_fields(trigger_cls, data, path)

        condition = kwargs.get("condition")
        if "condition" in kwargs:
            condition_cls = MailCondition if data["type"] == "mail_arrival" else MessageCondition
            kwargs["condition"] = self._build(condition_cls, condition or {}, f"{path}.condition")
        if "transition" in kwargs:
            try:
                kwargs["transition"] = GeofenceTransition.from_value(kwargs["transition"])
            except ValueError as e:
                raise WorkflowParseError(f"{path}.transition: {e}")

        return self._build(trigger_cls, kwargs, path)

    def _parse_action(self, data: Dict[str, Any], path: str) -> Action:
        """解析动作（递归处理嵌套动作）"""
        action_cls = ACTION_TYPES[data["type"]]
        kwargs = self._collect_fields(action_cls, data, path)

        for name in _NESTED_ACTION_FIELDS:
            if kwargs.get(name) is not None:
                kwargs[name] = self._parse_action(kwargs[name], f"{path}.{name}")

        for name, enum_cls in _ENUM_FIELDS.items():
            if name in kwargs:
                try:
                    kwargs[name] = enum_cls(str(kwargs[name]).lower())
                except ValueError:
                    allowed = ", ".join(member.value for member in enum_cls)
                    raise WorkflowParseError(f"{path}.{name}: expected one of {allowed}, got {kwargs[name]!r}")

        for name in ("user_ids", "channels"):
            if name in kwargs and isinstance(kwargs[name], str):
                kwargs[name] = [item.strip() for item in kwargs[name].split(",") if item.strip()]

        return self._build(action_cls, kwargs, path)

    def _collect_fields(self, cls, data: Dict[str, Any], path: str) -> Dict[str, Any]:
        allowed = {f.name for f in fields(cls)}
        unknown = set(data) - allowed - {"type"}
        if unknown:
            raise WorkflowParseError(
                f"{path}: unknown field(s) {', '.join(sorted(unknown))} for '{data['type']}'"
            )
        return {key: value for key, value in data.items() if key != "type"}

    def _build(self, cls, kwargs: Dict[str, Any], path: str):
        allowed = {f.name for f in fields(cls)}
        unknown = set(kwargs) - allowed
        if unknown:
            raise WorkflowParseError(f"{path}: unknown field(s) {', '.join(sorted(unknown))}")
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise WorkflowParseError(f"{path}: {e}")

    def _dump(self, data: Dict[str, Any], fmt: str) -> str:
        if fmt in ("yaml", "yml"):
            return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        if fmt == "json":
            return json.dumps(data, indent=2, ensure_ascii=False)
        raise WorkflowParseError(f"Unsupported output format: {fmt}")


def _dataclass_to_dict(obj: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    type_name = getattr(obj, "type_name", "")
    if type_name:
        data["type"] = type_name
    for f in fields(obj):
        value = _to_plain(getattr(obj, f.name))
        if value is not None:
            data[f.name] = value
    return data


def _to_plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return _dataclass_to_dict(value)
    if isinstance(value, (list, tuple)):
        return [_to_plain(item) for item in value]
    return value


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise WorkflowParseError(f"Invalid timestamp: {value!r}")


def _looks_like_path(source: str) -> bool:
    return "\n" not in source and len(source) < 1024 and source.lower().endswith((".yaml", ".yml", ".json"))

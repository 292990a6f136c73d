#!/usr/bin/env python3
"""
路由规则存储

内存中的权威模型：预置规则组 + 自定义规则，外加单调递增的配置版本号（ConfigVersion）。

- 所有修改在同一把锁内完成"校验 → 持久化 → 替换"，单次调用要么全部生效要么不生效
- 只有实际发生变化的提交才会让版本号 +1（重复启用同一规则组不会产生新版本）
- 出站只在提交时校验：外部过滤器被停用后，引用它的规则不会被回溯判定为非法，
  直到下次显式修改该规则的出站，或由配置生成阶段重新校验
- 提交完成后（锁外）通知订阅者新版本号，协调器据此决定是否 apply
"""

import ipaddress
import json
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from log_config import get_logger
from manager_errors import (
    InvalidOutboundError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from outbound_resolver import is_valid_outbound, labels, resolve
from rule_models import (
    DEFAULT_RULE_PRIORITY,
    OUTBOUND_DIRECT,
    OUTBOUND_PROXY,
    OUTBOUND_REJECT,
    RULE_TYPES,
    VALID_RULE_TYPES,
    CountryGroup,
    CustomRule,
    Filter,
    OutboundTarget,
    RuleGroup,
)

logger = get_logger("rule_store")

NamespaceSource = Callable[[], Tuple[List[CountryGroup], List[Filter]]]
VersionListener = Callable[[int], None]
EffectiveRule = Union[RuleGroup, CustomRule]

# 自定义规则允许修改的字段
CUSTOM_RULE_FIELDS = ("name", "rule_type", "values", "outbound", "enabled", "priority")

# 预置规则组（注册顺序即生效顺序）
DEFAULT_RULE_GROUPS: List[Dict[str, Any]] = [
    {"id": "ad-block", "name": "广告拦截", "site_rules": ["category-ads-all"],
     "outbound": OUTBOUND_REJECT, "enabled": True},
    {"id": "ai-services", "name": "AI 服务", "site_rules": ["openai", "anthropic", "google-gemini"],
     "outbound": OUTBOUND_PROXY, "enabled": True},
    {"id": "google", "name": "Google", "site_rules": ["google"], "ip_rules": ["google"],
     "outbound": OUTBOUND_PROXY, "enabled": True},
    {"id": "youtube", "name": "YouTube", "site_rules": ["youtube"],
     "outbound": OUTBOUND_PROXY, "enabled": True},
    {"id": "github", "name": "GitHub", "site_rules": ["github"],
     "outbound": OUTBOUND_PROXY, "enabled": True},
    {"id": "telegram", "name": "Telegram", "site_rules": ["telegram"], "ip_rules": ["telegram"],
     "outbound": OUTBOUND_PROXY, "enabled": True},
    {"id": "twitter", "name": "Twitter", "site_rules": ["twitter"], "ip_rules": ["twitter"],
     "outbound": OUTBOUND_PROXY, "enabled": False},
    {"id": "netflix", "name": "Netflix", "site_rules": ["netflix"], "ip_rules": ["netflix"],
     "outbound": OUTBOUND_PROXY, "enabled": False},
    {"id": "spotify", "name": "Spotify", "site_rules": ["spotify"],
     "outbound": OUTBOUND_PROXY, "enabled": False},
    {"id": "apple", "name": "Apple", "site_rules": ["apple"],
     "outbound": OUTBOUND_DIRECT, "enabled": False},
    {"id": "microsoft", "name": "Microsoft", "site_rules": ["microsoft"],
     "outbound": OUTBOUND_DIRECT, "enabled": False},
    {"id": "cn", "name": "国内直连", "site_rules": ["geolocation-cn"], "ip_rules": ["cn"],
     "outbound": OUTBOUND_DIRECT, "enabled": True},
    {"id": "private", "name": "私有网络", "site_rules": ["private"], "ip_rules": ["private"],
     "outbound": OUTBOUND_DIRECT, "enabled": True},
]


def _clean_tokens(raw: Any, field: str) -> List[str]:
    """去掉首尾空白与空项；字符串按换行/逗号拆分"""
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.replace(",", "\n").splitlines()
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"{field} 必须是字符串列表", field=field)
    tokens = []
    for item in raw:
        if not isinstance(item, (str, int)) or isinstance(item, bool):
            raise ValidationError(f"{field} 中包含非法项: {item!r}", field=field)
        token = str(item).strip()
        if token:
            tokens.append(token)
    return tokens


def _build_rule_group(data: Dict[str, Any]) -> RuleGroup:
    group_id = str(data.get("id") or "").strip()
    if not group_id:
        raise ValidationError("规则组缺少 id", field="id")
    site_rules = _clean_tokens(data.get("site_rules"), "site_rules")
    if not site_rules:
        raise ValidationError(f"规则组 {group_id} 的 site_rules 不能为空", field="site_rules")
    return RuleGroup(
        id=group_id,
        name=str(data.get("name") or group_id),
        site_rules=site_rules,
        outbound=str(data.get("outbound") or OUTBOUND_PROXY),
        enabled=bool(data.get("enabled", True)),
        ip_rules=_clean_tokens(data.get("ip_rules"), "ip_rules"),
    )


def load_preset_rule_groups(path: Optional[Path] = None) -> List[RuleGroup]:
    """读取预置规则组；path 指向的 YAML 文件存在时替换内置表

    YAML 格式::

        rule_groups:
          - id: ad-block
            name: 广告拦截
            site_rules: [category-ads-all]
            outbound: REJECT
            enabled: true
    """
    source: List[Dict[str, Any]] = DEFAULT_RULE_GROUPS
    if path is not None and Path(path).exists():
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ValidationError(f"读取预置规则组失败 {path}: {exc}") from exc
        source = data.get("rule_groups") or []
        logger.info(f"Loaded {len(source)} preset rule groups from {path}")

    groups: List[RuleGroup] = []
    seen = set()
    for item in source:
        group = _build_rule_group(item)
        if group.id in seen:
            raise ValidationError(f"预置规则组 id 重复: {group.id}", field="id")
        seen.add(group.id)
        groups.append(group)
    return groups


def _validate_values(rule_type: str, values: List[str]) -> None:
    if rule_type == "ip_cidr":
        for value in values:
            try:
                ipaddress.ip_network(value, strict=False)
            except ValueError:
                raise ValidationError(f"无效的 IP 段: {value}", field="values") from None
    elif rule_type == "port":
        for value in values:
            if not value.isdigit() or not 1 <= int(value) <= 65535:
                raise ValidationError(f"无效的端口: {value}", field="values")


def _validate_custom_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """校验并规范化自定义规则字段（不含出站），返回规范化后的字段"""
    name = str(fields.get("name") or "").strip()
    if not name:
        raise ValidationError("规则名称不能为空", field="name")

    rule_type = str(fields.get("rule_type") or "").strip()
    if rule_type not in VALID_RULE_TYPES:
        raise ValidationError(
            f"无效的规则类型: {rule_type or '(空)'}。支持: {', '.join(RULE_TYPES)}",
            field="rule_type",
        )

    values = _clean_tokens(fields.get("values"), "values")
    if not values:
        raise ValidationError("规则内容不能为空", field="values")
    _validate_values(rule_type, values)

    priority = fields.get("priority", DEFAULT_RULE_PRIORITY)
    if isinstance(priority, bool) or not isinstance(priority, int):
        try:
            priority = int(str(priority).strip())
        except ValueError:
            raise ValidationError(f"无效的优先级: {priority!r}", field="priority") from None

    return {
        "name": name,
        "rule_type": rule_type,
        "values": values,
        "outbound": str(fields.get("outbound") or "").strip(),
        "enabled": bool(fields.get("enabled", True)),
        "priority": priority,
    }


class RuleStore:
    """预置规则组与自定义规则的权威存储"""

    def __init__(
        self,
        namespace_source: Optional[NamespaceSource] = None,
        state_path: Optional[Path] = None,
        presets: Optional[Iterable[RuleGroup]] = None,
    ):
        self._namespace_source = namespace_source or (lambda: ([], []))
        self._state_path = Path(state_path) if state_path else None
        self._lock = threading.RLock()
        self._listeners: List[VersionListener] = []

        preset_list = list(presets) if presets is not None else load_preset_rule_groups()
        self._groups: Dict[str, RuleGroup] = {g.id: g.copy() for g in preset_list}
        self._rules: Dict[str, CustomRule] = {}
        # 预置规则组写入视为首次提交
        self._version = 1
        self._next_seq = 1

        if self._state_path is not None and self._state_path.exists():
            self._load_state()

    # ============ 读取 ============

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def namespace(self) -> List[OutboundTarget]:
        country_groups, filters = self._namespace_source()
        return resolve(country_groups, filters)

    def list_rule_groups(self) -> List[RuleGroup]:
        with self._lock:
            return [g.copy() for g in self._groups.values()]

    def get_rule_group(self, group_id: str) -> RuleGroup:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise NotFoundError("规则组", group_id)
            return group.copy()

    def list_custom_rules(self) -> List[CustomRule]:
        """全部自定义规则（含停用），按 (priority, 创建序号) 排序"""
        with self._lock:
            rules = [r.copy() for r in self._rules.values()]
        return sorted(rules, key=lambda r: (r.priority, r.seq))

    def get_custom_rule(self, rule_id: str) -> CustomRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise NotFoundError("规则", rule_id)
            return rule.copy()

    def effective_rules(self) -> List[EffectiveRule]:
        return self.snapshot()[1]

    def snapshot(self) -> Tuple[int, List[EffectiveRule]]:
        """原子地读取 (版本号, 生效规则序列)

        生效顺序：启用的规则组（注册顺序）在前，随后是启用的自定义规则，
        按 priority 升序，同优先级按创建顺序。
        """
        with self._lock:
            groups: List[EffectiveRule] = [g.copy() for g in self._groups.values() if g.enabled]
            customs = sorted(
                (r.copy() for r in self._rules.values() if r.enabled),
                key=lambda r: (r.priority, r.seq),
            )
            return self._version, groups + customs

    # ============ 订阅 ============

    def subscribe(self, listener: VersionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _notify(self, version: int) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(version)
            except Exception:
                logger.exception(f"Rule store listener failed for version {version}")

    # ============ 规则组 ============

    def toggle_rule_group(self, group_id: str, enabled: bool) -> RuleGroup:
        return self.update_rule_group(group_id, enabled=enabled)

    def set_rule_group_outbound(self, group_id: str, outbound: str) -> RuleGroup:
        return self.update_rule_group(group_id, outbound=outbound)

    def update_rule_group(
        self,
        group_id: str,
        enabled: Optional[bool] = None,
        outbound: Optional[str] = None,
    ) -> RuleGroup:
        """同时修改启用状态与出站，两者一起校验、一次提交"""
        with self._lock:
            current = self._groups.get(group_id)
            if current is None:
                raise NotFoundError("规则组", group_id)

            updated = current.copy()
            if enabled is not None:
                updated.enabled = bool(enabled)
            if outbound is not None:
                outbound = outbound.strip()
                if outbound != current.outbound:
                    self._check_outbound(outbound)
                updated.outbound = outbound

            if updated == current:
                return current.copy()

            groups = dict(self._groups)
            groups[group_id] = updated
            version = self._commit(groups, self._rules, self._next_seq)

        logger.info(f"Rule group {group_id} updated (enabled={updated.enabled}, "
                    f"outbound={updated.outbound}) -> version {version}")
        self._notify(version)
        return updated.copy()

    # ============ 自定义规则 ============

    def create_custom_rule(self, payload: Dict[str, Any]) -> CustomRule:
        self._reject_unknown_fields(payload)
        fields = _validate_custom_fields({k: v for k, v in payload.items() if v is not None})

        with self._lock:
            self._check_outbound(fields["outbound"])
            rule = CustomRule(id=uuid.uuid4().hex, seq=self._next_seq, **fields)
            rules = dict(self._rules)
            rules[rule.id] = rule
            version = self._commit(self._groups, rules, self._next_seq + 1)

        logger.info(f"Custom rule {rule.id} ({rule.name}) created -> version {version}")
        self._notify(version)
        return rule.copy()

    def update_custom_rule(self, rule_id: str, patch: Dict[str, Any]) -> CustomRule:
        """合并 patch 后按创建规则重新校验；出站仅在被修改时校验"""
        self._reject_unknown_fields(patch)

        with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise NotFoundError("规则", rule_id)

            merged = {name: getattr(current, name) for name in CUSTOM_RULE_FIELDS}
            merged.update({k: v for k, v in patch.items() if v is not None})
            fields = _validate_custom_fields(merged)
            if fields["outbound"] != current.outbound:
                self._check_outbound(fields["outbound"])

            updated = CustomRule(id=current.id, seq=current.seq, **fields)
            if updated == current:
                return current.copy()

            rules = dict(self._rules)
            rules[rule_id] = updated
            version = self._commit(self._groups, rules, self._next_seq)

        logger.info(f"Custom rule {rule_id} updated -> version {version}")
        self._notify(version)
        return updated.copy()

    def delete_custom_rule(self, rule_id: str) -> None:
        with self._lock:
            if rule_id not in self._rules:
                raise NotFoundError("规则", rule_id)
            rules = dict(self._rules)
            del rules[rule_id]
            version = self._commit(self._groups, rules, self._next_seq)

        logger.info(f"Custom rule {rule_id} deleted -> version {version}")
        self._notify(version)

    # ============ 内部 ============

    @staticmethod
    def _reject_unknown_fields(data: Dict[str, Any]) -> None:
        unknown = sorted(set(data) - set(CUSTOM_RULE_FIELDS))
        if unknown:
            raise ValidationError(f"未知字段: {', '.join(unknown)}", field=unknown[0])

    def _check_outbound(self, outbound: str) -> None:
        targets = self.namespace()
        if not outbound or not is_valid_outbound(outbound, targets):
            raise InvalidOutboundError(outbound, labels(targets))

    def _commit(self, groups: Dict[str, RuleGroup], rules: Dict[str, CustomRule], next_seq: int) -> int:
        """持久化成功后才替换内存状态；调用方必须持有锁"""
        version = self._version + 1
        if self._state_path is not None:
            self._save_state(version, groups, rules, next_seq)
        self._groups = groups
        self._rules = rules
        self._next_seq = next_seq
        self._version = version
        return version

    def _save_state(self, version: int, groups: Dict[str, RuleGroup],
                    rules: Dict[str, CustomRule], next_seq: int) -> None:
        state = {
            "version": version,
            "next_seq": next_seq,
            "rule_groups": {
                g.id: {"enabled": g.enabled, "outbound": g.outbound} for g in groups.values()
            },
            "rules": [r.to_dict() for r in rules.values()],
        }
        path = self._state_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as exc:
            logger.error(f"Failed to persist rule state to {path}: {exc}")
            raise PersistenceError(f"保存规则失败: {exc}") from exc

    def _load_state(self) -> None:
        path = self._state_path
        try:
            state = json.loads(path.read_text(encoding="utf-8"))
            rules = [CustomRule.from_dict(item) for item in state.get("rules", [])]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"读取规则状态失败 {path}: {exc}") from exc

        # 手工编辑过的状态文件同样要满足创建时的校验
        restored = []
        for rule in rules:
            try:
                fields = _validate_custom_fields(rule.to_dict())
            except ValidationError as exc:
                raise PersistenceError(f"规则状态 {path} 中的规则 {rule.id} 无效: {exc.message}") from exc
            if not fields["outbound"]:
                raise PersistenceError(f"规则状态 {path} 中的规则 {rule.id} 缺少出站")
            restored.append(CustomRule(id=rule.id, seq=rule.seq, **fields))
        rules = restored

        for group_id, override in (state.get("rule_groups") or {}).items():
            group = self._groups.get(group_id)
            if group is None:
                logger.warning(f"Ignoring saved state for unknown rule group: {group_id}")
                continue
            group.enabled = bool(override.get("enabled", group.enabled))
            group.outbound = str(override.get("outbound") or group.outbound)

        self._rules = {r.id: r for r in rules}
        max_seq = max((r.seq for r in rules), default=0)
        self._next_seq = max(int(state.get("next_seq", 1)), max_seq + 1)
        self._version = max(int(state.get("version", 1)), 1)
        logger.info(f"Loaded rule state from {path}: {len(rules)} custom rules, version {self._version}")

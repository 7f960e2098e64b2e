#!/usr/bin/env python3
"""FastAPI 服务：订阅、配置与路由规则的管理接口

界面层只通过这里调用各组件：
- 分享链接解析、订阅内容预览
- 订阅增删改、刷新、切换、回滚
- 当前配置中的规则增删改与所属规则集查询
- 规则集管理、出站列表、匹配字段目录、用户设置
"""
import json
import logging
import os
from collections import deque
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config_repository import ConfigRepository
from db_helper import ProxySettings, UserDatabase, get_db
from proxy_uri_parser import UriDecodeError, decode_uri
from rule_builder import DEFAULT_RULE_SET, RuleEditData, RuleItem, field_info_for_key
from rule_config_service import RuleConfigService
from shared_rules_store import SharedRulesStore
from subscription_parser import CONTENT_KINDS, parse_subscription_content
from subscription_service import SubscriptionInfo, SubscriptionService

logger = logging.getLogger(__name__)

MAX_EVENTS = 200


# ============ 请求模型 ============


class UriDecodeRequest(BaseModel):
    uri: str = Field(..., description="分享链接，如 vmess://...")


class ContentPreviewRequest(BaseModel):
    content: str = Field(..., description="订阅原文")
    kind: str = Field("auto", description="auto / json / uri_list")


class SubscriptionCreateRequest(BaseModel):
    """新增订阅：url 与 content 二选一"""
    url: Optional[str] = None
    content: Optional[str] = None
    name: str = ""
    use_original_config: bool = False
    auto_update_minutes: int = Field(0, ge=0)
    apply_runtime: bool = False
    enable_shared_rules: bool = True
    rule_sets: Optional[List[str]] = None


class SubscriptionUpdateRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    is_manual: Optional[bool] = None
    manual_content: Optional[str] = None
    use_original_config: Optional[bool] = None
    auto_update_minutes: Optional[int] = Field(None, ge=0)
    enable_shared_rules: Optional[bool] = None
    rule_sets: Optional[List[str]] = None
    enabled: Optional[bool] = None


class ApplyRequest(BaseModel):
    apply_runtime: bool = False


class ConfigSaveRequest(BaseModel):
    config: Dict[str, Any]
    apply_runtime: bool = False


class RuleItemModel(BaseModel):
    """规则的展示形式（key=v1,v2 + 出站）"""
    type: str = ""
    payload: str = Field(..., description="如 domain_suffix=example.com,example.org")
    proxy: str = Field("", description="出站标签")
    rule_set: str = ""
    is_custom: bool = False

    def to_item(self) -> RuleItem:
        return RuleItem(
            type=self.type,
            payload=self.payload,
            proxy=self.proxy,
            rule_set=self.rule_set,
            is_custom=self.is_custom,
        )


class RuleEditRequest(BaseModel):
    key: str = Field(..., description="匹配字段，如 domain_suffix")
    values: List[str] = Field(default_factory=list)
    outbound: str = ""
    rule_set: str = DEFAULT_RULE_SET

    def to_edit_data(self) -> RuleEditData:
        return RuleEditData(
            field_info=field_info_for_key(self.key),
            values=self.values,
            outbound_tag=self.outbound,
            rule_set=self.rule_set,
        )


class RuleUpdateRequest(BaseModel):
    existing: RuleItemModel
    rule: RuleEditRequest


class RuleSetCreateRequest(BaseModel):
    name: str


class RuleSetRenameRequest(BaseModel):
    new_name: str


class RuleSetRulesRequest(BaseModel):
    rules: List[Dict[str, Any]]


# ============ 组件装配 ============


class Services:
    """接口层使用的组件集合"""

    def __init__(
        self,
        db: UserDatabase,
        config_repo: ConfigRepository,
        rules_store: SharedRulesStore,
        fetcher=None,
    ):
        self.db = db
        self.config_repo = config_repo
        self.rules_store = rules_store
        self.events: deque = deque(maxlen=MAX_EVENTS)
        self.subscriptions = SubscriptionService(
            db, config_repo, rules_store, fetcher=fetcher, notify=self.record_event
        )
        self.rules = RuleConfigService(config_repo, rules_store)

    def record_event(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append({"event": event, **payload})


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services(get_db(), ConfigRepository(), SharedRulesStore())
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def _raise_for(error: str) -> None:
    """失败结果 → HTTPException（not found 为 404，其余 400）"""
    status = 404 if "not found" in error.lower() else 400
    raise HTTPException(status_code=status, detail=error)


def _subscription_dict(info: SubscriptionInfo) -> Dict[str, Any]:
    data = asdict(info)
    data.pop("manual_content", None)
    return data


def _rule_item_dict(item: RuleItem) -> Dict[str, Any]:
    data = asdict(item)
    data["rule_set"] = item.rule_set or DEFAULT_RULE_SET
    return data


app = FastAPI(title="sing-box Subscription & Rules API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
def api_health():
    return {"status": "ok"}


@app.get("/api/events")
def api_events(limit: int = 50):
    """最近的订阅事件（新的在后）"""
    events = list(get_services().events)
    return {"events": events[-limit:] if limit > 0 else []}


# ============ 解析 ============


@app.post("/api/uri/decode")
def api_decode_uri(payload: UriDecodeRequest):
    """解析单个分享链接为 sing-box outbound"""
    try:
        return {"outbound": decode_uri(payload.uri)}
    except UriDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/subscriptions/preview")
def api_preview_subscription(payload: ContentPreviewRequest):
    """预览订阅内容能解析出的节点（不保存）"""
    if payload.kind not in CONTENT_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown content kind: {payload.kind}")
    result = parse_subscription_content(payload.content, payload.kind)
    return {"nodes": result.nodes, "count": len(result.nodes), "skipped": result.skipped}


# ============ 订阅 ============


@app.get("/api/subscriptions")
def api_list_subscriptions():
    service = get_services().subscriptions
    return {
        "subscriptions": [_subscription_dict(info) for info in service.list_subscriptions()],
        "active_config_path": service.get_active_config_path(),
    }


@app.post("/api/subscriptions")
def api_create_subscription(payload: SubscriptionCreateRequest):
    service = get_services().subscriptions
    if payload.url and payload.content:
        raise HTTPException(status_code=400, detail="Provide either url or content, not both")
    if payload.url:
        info, error = service.add_url_subscription(
            payload.url,
            name=payload.name,
            use_original_config=payload.use_original_config,
            auto_update_minutes=payload.auto_update_minutes,
            apply_runtime=payload.apply_runtime,
            enable_shared_rules=payload.enable_shared_rules,
            rule_sets=payload.rule_sets,
        )
    else:
        info, error = service.add_manual_subscription(
            payload.content or "",
            name=payload.name,
            use_original_config=payload.use_original_config,
            apply_runtime=payload.apply_runtime,
            enable_shared_rules=payload.enable_shared_rules,
            rule_sets=payload.rule_sets,
        )
    if info is None:
        _raise_for(error)
    return {"subscription": _subscription_dict(info)}


@app.post("/api/subscriptions/refresh")
def api_refresh_all_subscriptions(payload: ApplyRequest):
    results = get_services().subscriptions.refresh_all(payload.apply_runtime)
    return {"results": {sub_id: {"ok": not error, "error": error} for sub_id, error in results.items()}}


@app.delete("/api/subscriptions/active")
def api_clear_active_subscription():
    get_services().subscriptions.clear_active_subscription()
    return {"message": "active subscription cleared"}


@app.get("/api/subscriptions/{sub_id}")
def api_get_subscription(sub_id: str):
    info = get_services().subscriptions.get_subscription(sub_id)
    if info is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    data = _subscription_dict(info)
    data["manual_content"] = info.manual_content
    return {"subscription": data}


@app.put("/api/subscriptions/{sub_id}")
def api_update_subscription(sub_id: str, payload: SubscriptionUpdateRequest):
    changes = payload.model_dump(exclude_none=True)
    info, error = get_services().subscriptions.update_subscription_meta(sub_id, **changes)
    if info is None:
        _raise_for(error)
    return {"subscription": _subscription_dict(info)}


@app.delete("/api/subscriptions/{sub_id}")
def api_delete_subscription(sub_id: str):
    ok, error = get_services().subscriptions.remove_subscription(sub_id)
    if not ok:
        _raise_for(error)
    return {"message": f"subscription {sub_id} removed"}


@app.post("/api/subscriptions/{sub_id}/refresh")
def api_refresh_subscription(sub_id: str, payload: ApplyRequest):
    info, error = get_services().subscriptions.refresh_subscription(sub_id, payload.apply_runtime)
    if info is None:
        _raise_for(error)
    return {"subscription": _subscription_dict(info)}


@app.post("/api/subscriptions/{sub_id}/activate")
def api_activate_subscription(sub_id: str, payload: ApplyRequest):
    ok, error = get_services().subscriptions.set_active_subscription(sub_id, payload.apply_runtime)
    if not ok:
        _raise_for(error)
    return {"message": f"subscription {sub_id} activated"}


@app.post("/api/subscriptions/{sub_id}/rollback")
def api_rollback_subscription(sub_id: str):
    ok, error = get_services().subscriptions.rollback_subscription(sub_id)
    if not ok:
        _raise_for(error)
    return {"message": f"subscription {sub_id} rolled back"}


# ============ 当前配置 ============


@app.get("/api/config")
def api_get_current_config():
    content = get_services().subscriptions.get_current_config()
    if not content:
        raise HTTPException(status_code=404, detail="Active config not found.")
    try:
        return {"config": json.loads(content)}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Active config is not valid JSON: {e}")


@app.put("/api/config")
def api_save_current_config(payload: ConfigSaveRequest):
    ok, error = get_services().subscriptions.save_current_config(payload.config, payload.apply_runtime)
    if not ok:
        _raise_for(error)
    return {"message": "config saved"}


@app.get("/api/settings")
def api_get_settings():
    return {"settings": asdict(get_services().db.get_proxy_settings())}


@app.put("/api/settings")
def api_update_settings(payload: Dict[str, Any]):
    """部分更新用户设置，未知键返回 400"""
    db = get_services().db
    values = db.get_proxy_settings().to_settings()
    unknown = [k for k in payload if k not in values]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown settings: {', '.join(sorted(unknown))}")
    for key, value in payload.items():
        if isinstance(value, bool):
            values[key] = "1" if value else "0"
        elif isinstance(value, list):
            values[key] = json.dumps(value, ensure_ascii=False)
        else:
            values[key] = str(value)
    settings = ProxySettings.from_settings(values)
    if not db.save_proxy_settings(settings):
        raise HTTPException(status_code=500, detail="Failed to save settings")
    return {"settings": asdict(settings)}


# ============ 路由规则 ============


@app.get("/api/rules")
def api_list_rules():
    items, error = get_services().rules.list_rules()
    if error:
        _raise_for(error)
    return {"rules": [_rule_item_dict(item) for item in items]}


@app.post("/api/rules")
def api_add_rule(payload: RuleEditRequest):
    item, error = get_services().rules.add_rule(payload.to_edit_data())
    if item is None:
        _raise_for(error)
    return {"rule": _rule_item_dict(item)}


@app.put("/api/rules")
def api_update_rule(payload: RuleUpdateRequest):
    item, error = get_services().rules.update_rule(payload.existing.to_item(), payload.rule.to_edit_data())
    if item is None:
        _raise_for(error)
    return {"rule": _rule_item_dict(item)}


@app.post("/api/rules/remove")
def api_remove_rule(payload: RuleItemModel):
    ok, error = get_services().rules.remove_rule(payload.to_item())
    if not ok:
        _raise_for(error)
    return {"message": "rule removed"}


@app.post("/api/rules/lookup")
def api_lookup_rule_set(payload: RuleItemModel):
    """查找规则所属规则集；未匹配时归入 default"""
    found = get_services().rules.find_rule_set(payload.to_item())
    return {"rule_set": found or DEFAULT_RULE_SET, "matched": bool(found)}


@app.get("/api/rule-fields")
def api_rule_fields():
    return {"fields": [asdict(info) for info in RuleConfigService.field_infos()]}


@app.get("/api/outbounds")
def api_outbound_tags(extra: str = ""):
    tags, error = get_services().rules.load_outbound_tags(extra)
    return {"outbounds": tags, "error": error}


# ============ 规则集 ============


@app.get("/api/rule-sets")
def api_list_rule_sets():
    return {"rule_sets": get_services().rules_store.list_rule_sets()}


@app.post("/api/rule-sets")
def api_create_rule_set(payload: RuleSetCreateRequest):
    ok, error = get_services().rules_store.create_rule_set(payload.name)
    if not ok:
        _raise_for(error)
    return {"message": f"rule set {payload.name.strip()} created"}


@app.put("/api/rule-sets/{name}")
def api_rename_rule_set(name: str, payload: RuleSetRenameRequest):
    ok, error = get_services().rules_store.rename_rule_set(name, payload.new_name)
    if not ok:
        _raise_for(error)
    return {"message": f"rule set {name} renamed to {payload.new_name.strip()}"}


@app.delete("/api/rule-sets/{name}")
def api_delete_rule_set(name: str):
    ok, error = get_services().rules_store.remove_rule_set(name)
    if not ok:
        _raise_for(error)
    return {"message": f"rule set {name} removed"}


@app.get("/api/rule-sets/{name}/rules")
def api_get_rule_set_rules(name: str):
    store = get_services().rules_store
    if not store.has_rule_set(name):
        raise HTTPException(status_code=404, detail=f"Rule set not found: {name}")
    return {"name": name, "rules": store.load_rules(name)}


@app.put("/api/rule-sets/{name}/rules")
def api_save_rule_set_rules(name: str, payload: RuleSetRulesRequest):
    ok, error = get_services().rules_store.save_rules(name, payload.rules)
    if not ok:
        _raise_for(error)
    return {"name": name, "count": len(payload.rules)}


if __name__ == "__main__":
    import uvicorn

    from log_config import setup_logging, uvicorn_log_config

    setup_logging()
    uvicorn.run(
        "api_server:app",
        host=os.environ.get("API_HOST", "127.0.0.1"),
        port=int(os.environ.get("API_PORT", "8000")),
        reload=False,
        log_config=uvicorn_log_config(),
    )

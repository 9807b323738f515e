from fastapi import Request

from riahunter.core.settings import Settings
from riahunter.services.admin_gate import AdminAdjustmentGate
from riahunter.services.billing import StripeWebhookProcessor
from riahunter.services.demo_session import DemoQuotaCounter
from riahunter.services.identity import IdentityResolver
from riahunter.services.metering import MeteringEngine


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_resolver(request: Request) -> IdentityResolver:
    return request.app.state.resolver


def get_engine(request: Request) -> MeteringEngine:
    return request.app.state.metering


def get_demo_counter(request: Request) -> DemoQuotaCounter:
    return request.app.state.demo_counter


def get_admin_gate(request: Request) -> AdminAdjustmentGate:
    return request.app.state.admin_gate


def get_webhook_processor(request: Request) -> StripeWebhookProcessor:
    return request.app.state.webhook_processor

"""
Service dependencies for routers.

The long-lived collaborators (realtime registry, cache invalidator, ledger,
dispatcher, state machine, sweeper) are built once in the app lifespan and kept
on ``app.state``; routes receive them through these providers.
"""
from fastapi import Request

from marketplace.services.expiry_sweeper import ExpirySweeper
from marketplace.services.ledger_service import CreditLedger
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.realtime_registry import RealtimeRegistry
from marketplace.services.request_service import RequestStateMachine


def get_registry(request: Request) -> RealtimeRegistry:
    return request.app.state.realtime_registry


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_state_machine(request: Request) -> RequestStateMachine:
    return request.app.state.state_machine


def get_sweeper(request: Request) -> ExpirySweeper:
    return request.app.state.sweeper

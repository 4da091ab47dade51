"""
Pytest 配置和 fixtures
每个测试使用独立的 SQLite 数据库文件（aiosqlite）
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from rf_core.config import Settings
from rf_core.database import DatabaseManager
from rf_core.models.base import utcnow
from rf_core.models.enums import MovementType, NotificationEvent, ReturnOrigin
from rf_core.models.schemas import ReturnRead
from rf_core.services import (
    InventoryService,
    LedgerService,
    OrderLine,
    OrderSnapshot,
    ProductInfo,
    ReturnOrchestrator,
    TransactionRunner,
)


class FakeOrderLookup:
    """内存订单查询"""

    def __init__(self):
        self.orders: Dict[Tuple[str, ReturnOrigin], OrderSnapshot] = {}

    def add(self, order: OrderSnapshot) -> None:
        self.orders[(order.order_id, order.origin)] = order

    async def get_order(self, order_id: str, origin: ReturnOrigin) -> Optional[OrderSnapshot]:
        return self.orders.get((order_id, ReturnOrigin(origin)))


class FakeProductLookup:
    def __init__(self, products: List[ProductInfo]):
        self.products = {product.product_id: product for product in products}

    async def get_product(self, product_id: str) -> Optional[ProductInfo]:
        return self.products.get(product_id)


class FakePartyBalances:
    """记录 record_refund 调用；fail=True 时抛错"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail = False

    async def record_refund(self, party_id, amount, original_order_id, metadata) -> None:
        if self.fail:
            raise RuntimeError("party balance service unavailable")
        self.calls.append({
            "party_id": party_id,
            "amount": amount,
            "original_order_id": original_order_id,
            "metadata": metadata,
        })


class RecordingNotifier:
    def __init__(self):
        self.events: List[Tuple[str, NotificationEvent]] = []
        self.fail = False

    async def notify(self, ret: ReturnRead, event: NotificationEvent) -> None:
        if self.fail:
            raise ConnectionError("notification channel down")
        self.events.append((ret.return_number, event))


@pytest.fixture
def settings(tmp_path):
    """测试配置"""
    return Settings(
        _env_file=None,
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'returnflow.db'}",
        slow_query_threshold_ms=10_000,
        slow_query_log_dir=str(tmp_path / "logs"),
        tx_max_retries=3,
        tx_retry_base_delay_ms=1,
        return_window_days=30,
        restocking_fee_percent=10.0,
        log_format="text",
    )


@pytest_asyncio.fixture
async def db_manager(settings):
    """数据库管理器 fixture"""
    manager = DatabaseManager(settings)
    await manager.create_tables()

    yield manager

    await manager.close()


@pytest.fixture
def runner(db_manager):
    return TransactionRunner(db_manager)


@pytest.fixture
def inventory(settings):
    return InventoryService(settings)


@pytest.fixture
def ledger(settings):
    return LedgerService(settings)


@pytest.fixture
def orders():
    """示例订单：近期销售单、过期销售单、两张同商品的采购单"""
    lookup = FakeOrderLookup()
    today = utcnow().date()
    lookup.add(OrderSnapshot(
        order_id="SO-1",
        origin=ReturnOrigin.SALE,
        order_number="SO-0001",
        order_date=today - timedelta(days=5),
        customer_id="C-1",
        lines=[
            OrderLine("L1", "P-100", 5, Decimal("50.00"), Decimal("30.00")),
            OrderLine("L2", "P-200", 2, Decimal("20.00")),
        ],
    ))
    lookup.add(OrderSnapshot(
        order_id="SO-OLD",
        origin=ReturnOrigin.SALE,
        order_date=today - timedelta(days=60),
        customer_id="C-2",
        lines=[OrderLine("L1", "P-100", 1, Decimal("50.00"), Decimal("30.00"))],
    ))
    lookup.add(OrderSnapshot(
        order_id="PO-1",
        origin=ReturnOrigin.PURCHASE,
        order_number="PO-0001",
        order_date=today - timedelta(days=3),
        supplier_id="S-1",
        lines=[OrderLine("PL1", "P-100", 10, Decimal("30.00"), Decimal("30.00"))],
    ))
    lookup.add(OrderSnapshot(
        order_id="PO-2",
        origin=ReturnOrigin.PURCHASE,
        order_number="PO-0002",
        order_date=today - timedelta(days=2),
        supplier_id="S-2",
        lines=[OrderLine("PL1", "P-100", 10, Decimal("32.00"), Decimal("32.00"))],
    ))
    return lookup


@pytest.fixture
def products():
    return FakeProductLookup([
        ProductInfo("P-100", "Desk lamp", "LAMP-100"),
        ProductInfo("P-200", "Bulb", "BULB-200"),
    ])


@pytest.fixture
def party_balances():
    return FakePartyBalances()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(runner, orders, products, party_balances, notifier):
    return ReturnOrchestrator(
        runner,
        order_lookup=orders,
        product_lookup=products,
        party_balances=party_balances,
        notifier=notifier,
    )


@pytest.fixture
def seed_stock(runner, inventory):
    """写入一条 adjustment 流水作为期初库存"""
    async def _seed(product_id: str, quantity: int) -> None:
        async def work(session):
            await inventory.apply_movement(
                session,
                product_id=product_id,
                movement_type=MovementType.ADJUSTMENT,
                quantity=quantity,
                unit_cost=Decimal("30.00"),
                reference_type="opening_balance",
            )

        await runner.run_in_transaction(work)

    return _seed


@pytest.fixture
def sale_request():
    """销售退货请求构造器：SO-1 第 1 行 2 件，成色 good，原因 changed_mind"""
    def _build(**overrides) -> Dict[str, Any]:
        request = {
            "origin": "sale",
            "order_id": "SO-1",
            "items": [{
                "product_id": "P-100",
                "order_line_id": "L1",
                "quantity": 2,
                "reason": "changed_mind",
                "condition": "good",
            }],
        }
        request.update(overrides)
        return request

    return _build

"""
支付领域服务 - 与具体网关无关的纯业务规则
"""
from __future__ import annotations

from domain.common.exceptions import DomainValidationException


def allocate_line_discount(unit_amount: int, quantity: int, discount: int) -> list[tuple[int, int]]:
    """
    将整行折扣分摊到每个单位上，且不丢失或多算任何最小货币单位。

    整除余数 r 个单位各多承担 1 个最小单位，因此结果可能拆成两组：
    ``(unit - base, quantity - r)`` 与 ``(unit - base - 1, r)``。
    单价不会低于 0。

    Returns:
        [(单价, 数量), ...]，数量为 0 的组会被省略
    """
    if quantity <= 0:
        raise DomainValidationException(f"数量必须大于0: {quantity}", field="quantity")
    if unit_amount < 0:
        raise DomainValidationException(f"单价不能为负: {unit_amount}", field="unit_amount_minor")
    discount = max(0, min(discount, unit_amount * quantity))
    if discount == 0:
        return [(unit_amount, quantity)]

    base, remainder = divmod(discount, quantity)
    groups = [
        (unit_amount - base, quantity - remainder),
        (unit_amount - base - 1, remainder),
    ]
    return [(price, qty) for price, qty in groups if qty > 0]

"""
Order state machine — pure transition validation.

Two canonical flows, selected by payment mode:
    ONLINE: PENDING_PAYMENT -> PAID -> PACKED -> SHIPPED -> DELIVERED
    COD:    CONFIRMED -> PACKED -> SHIPPED -> DELIVERED

Rules, in priority order:
    1. CANCELLED / RETURN_REQUESTED / REPLACED accept nothing
    2. Cancellation has its own rule (customers only before PACKED)
    3. ADMIN / SUPER_ADMIN may set any status from a non-terminal state
    4. VENDOR may only set PACKED or SHIPPED
    5. CUSTOMER may not change status directly
    6. Everyone else must move to the immediate successor in the flow
    7. DELIVERED -> RETURN_REQUESTED and any -> REPLACED bypass the flow

No I/O happens here; callers persist the result with a conditional update.
"""
from domain.enums import OrderStatus, PaymentMode, UserRole
from domain.errors import ForbiddenTransitionError, InvalidStateError, InvalidTransitionError

TERMINAL_STATES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURN_REQUESTED,
    OrderStatus.REPLACED,
})

# DELIVERED is terminal for the forward flow only
CLOSED_STATES = TERMINAL_STATES - {OrderStatus.DELIVERED}

FLOW_ONLINE = (
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PAID,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

FLOW_COD = (
    OrderStatus.CONFIRMED,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPER_ADMIN})
VENDOR_TARGETS = frozenset({OrderStatus.PACKED, OrderStatus.SHIPPED})

# Checkout-driven entry into a flow
INITIAL_TRANSITIONS = frozenset({
    (OrderStatus.CREATED, OrderStatus.PENDING_PAYMENT),
    (OrderStatus.CREATED, OrderStatus.CONFIRMED),
})


def flow_for(payment_mode: PaymentMode | str) -> tuple[OrderStatus, ...]:
    return FLOW_COD if PaymentMode(payment_mode) == PaymentMode.COD else FLOW_ONLINE


def _index(flow: tuple[OrderStatus, ...], status: OrderStatus) -> int:
    try:
        return flow.index(status)
    except ValueError:
        return -1


def validate_transition(
    current: OrderStatus | str,
    next_status: OrderStatus | str,
    actor_role: UserRole | str,
    payment_mode: PaymentMode | str = PaymentMode.ONLINE,
) -> None:
    """
    Validate a status change. Returns None when allowed.

    Raises:
        InvalidStateError: order is closed (or DELIVERED for a cancellation)
        ForbiddenTransitionError: actor role may not request this target
        InvalidTransitionError: target skips or regresses the active flow
    """
    current = OrderStatus(current)
    next_status = OrderStatus(next_status)
    role = UserRole(actor_role)
    flow = flow_for(payment_mode)

    # 1. Closed states
    if current in CLOSED_STATES:
        raise InvalidStateError(f"Order is in terminal state {current.value}")

    if next_status == current:
        raise InvalidTransitionError(
            f"Order is already {current.value}",
            details={"from": current.value, "to": next_status.value, "reason": "no_change"},
        )

    # 2. Cancellation
    if next_status == OrderStatus.CANCELLED:
        validate_cancellation(current, role, payment_mode)
        return

    # 3. Admin override (DELIVERED only leaves through return or replacement)
    if role in ADMIN_ROLES:
        if current == OrderStatus.DELIVERED and next_status not in (
            OrderStatus.RETURN_REQUESTED, OrderStatus.REPLACED,
        ):
            raise InvalidStateError(f"Order is already {current.value}")
        return

    # 4/5. Role permissions
    if role == UserRole.VENDOR:
        current_index = _index(flow, current)
        next_index = _index(flow, next_status)
        # A forward skip inside the flow is reported as a skip, not a permission issue
        if current_index != -1 and next_index > current_index + 1:
            raise InvalidTransitionError(
                f"Cannot skip states {current.value} to {next_status.value}",
                details={"from": current.value, "to": next_status.value},
            )
        if next_status not in VENDOR_TARGETS:
            raise ForbiddenTransitionError("Vendors can only mark PACKED or SHIPPED")
    if role == UserRole.CUSTOMER:
        raise ForbiddenTransitionError("Customers cannot change status directly")

    # Checkout entry and explicit escape hatches
    if (current, next_status) in INITIAL_TRANSITIONS:
        return
    if current == OrderStatus.DELIVERED and next_status == OrderStatus.RETURN_REQUESTED:
        return
    if next_status == OrderStatus.REPLACED:
        return

    # 6. Flow order
    current_index = _index(flow, current)
    next_index = _index(flow, next_status)
    if current_index == -1 or next_index == -1:
        raise InvalidTransitionError(
            f"Invalid status transition from {current.value} to {next_status.value}",
            details={"from": current.value, "to": next_status.value},
        )
    if next_index <= current_index:
        raise InvalidTransitionError(
            f"State transitions must be forward-only ({current.value} to {next_status.value})",
            details={"from": current.value, "to": next_status.value, "reason": "regression"},
        )
    if next_index > current_index + 1:
        raise InvalidTransitionError(
            f"Cannot skip states {current.value} to {next_status.value}",
            details={"from": current.value, "to": next_status.value, "reason": "skip"},
        )


def validate_cancellation(
    current: OrderStatus | str,
    actor_role: UserRole | str,
    payment_mode: PaymentMode | str = PaymentMode.ONLINE,
) -> None:
    current = OrderStatus(current)
    role = UserRole(actor_role)

    if current in TERMINAL_STATES:
        raise InvalidStateError(f"Cannot cancel an order in state {current.value}")

    if role == UserRole.VENDOR:
        raise ForbiddenTransitionError("Vendors can only mark PACKED or SHIPPED")

    if role == UserRole.CUSTOMER:
        flow = flow_for(payment_mode)
        packed_index = flow.index(OrderStatus.PACKED)
        # CREATED sits before either flow starts
        if _index(flow, current) >= packed_index:
            raise InvalidTransitionError("Cannot cancel order after it has been packed")


def is_flow_override(
    current: OrderStatus | str,
    next_status: OrderStatus | str,
    payment_mode: PaymentMode | str = PaymentMode.ONLINE,
) -> bool:
    """True when an accepted transition is not a canonical flow step (admin override)."""
    current = OrderStatus(current)
    next_status = OrderStatus(next_status)
    if next_status in (OrderStatus.CANCELLED, OrderStatus.REPLACED):
        return False
    if (current, next_status) in INITIAL_TRANSITIONS:
        return False
    if current == OrderStatus.DELIVERED and next_status == OrderStatus.RETURN_REQUESTED:
        return False
    flow = flow_for(payment_mode)
    current_index = _index(flow, current)
    next_index = _index(flow, next_status)
    return current_index == -1 or next_index != current_index + 1


def allowed_next_states(
    current: OrderStatus | str,
    actor_role: UserRole | str,
    payment_mode: PaymentMode | str = PaymentMode.ONLINE,
) -> list[OrderStatus]:
    """Every target validate_transition() would accept, in enum order."""
    allowed = []
    for candidate in OrderStatus:
        try:
            validate_transition(current, candidate, actor_role, payment_mode)
        except (InvalidStateError, InvalidTransitionError, ForbiddenTransitionError):
            continue
        allowed.append(candidate)
    return allowed

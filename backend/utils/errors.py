"""
Ledger error taxonomy.

NotFound and InvalidState are surfaced to the caller as-is. TransactionAbort
wraps a database failure inside a unit of work; the transaction has already
been rolled back when it is raised, so callers may retry the whole operation.
"""


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# -------------------------------
# NotFound
# -------------------------------

class NotFoundError(LedgerError):
    status_code = 404


class OrderNotFound(NotFoundError):
    def __init__(self, order_id):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class PartyNotFound(NotFoundError):
    def __init__(self, party_id, party_type: str):
        super().__init__(f"{party_type} not found: {party_id}")
        self.party_id = party_id
        self.party_type = party_type


class CommissionNotFound(NotFoundError):
    def __init__(self, commission_id):
        super().__init__(f"Commission not found: {commission_id}")


class RemittanceCheckoutNotFound(NotFoundError):
    def __init__(self, razorpay_order_id):
        super().__init__(f"Remittance checkout not found: {razorpay_order_id}")


class WithdrawRequestNotFound(NotFoundError):
    def __init__(self, request_id):
        super().__init__(f"Withdraw request not found: {request_id}")


# -------------------------------
# InvalidState
# -------------------------------

class InvalidStateError(LedgerError):
    pass


class OrderNotDelivered(InvalidStateError):
    def __init__(self, order_id, status):
        super().__init__(
            f"Commissions can only be distributed for delivered orders (order {order_id} is {status})"
        )


class InvalidPaymentMethod(InvalidStateError):
    pass


class AgentNotAssigned(InvalidStateError):
    def __init__(self, order_id):
        super().__init__(f"Order {order_id} has no delivery agent assigned")


class InvalidCommissionTransition(InvalidStateError):
    def __init__(self, commission_id, current: str, target: str):
        super().__init__(f"Commission {commission_id} cannot move from {current} to {target}")
        self.current = current
        self.target = target


class InsufficientBalance(InvalidStateError):
    def __init__(self, requested: float, available: float):
        super().__init__(f"Insufficient balance: requested {requested}, available {available}")


class RemittanceExceedsPending(InvalidStateError):
    def __init__(self, amount: float, pending: float):
        super().__init__(f"Payment amount ({amount}) exceeds pending admin payout ({pending})")


class InvalidAmount(InvalidStateError):
    pass


class InvalidPaymentSignature(InvalidStateError):
    def __init__(self):
        super().__init__("Invalid payment signature")


class RemittanceCheckoutMismatch(InvalidStateError):
    pass


# -------------------------------
# TransactionAbort
# -------------------------------

class TransactionAbort(LedgerError):
    status_code = 500


# -------------------------------
# Payment gateway
# -------------------------------

class PaymentGatewayError(LedgerError):
    status_code = 502

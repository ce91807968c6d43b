from __future__ import annotations


class PointsError(Exception):
    pass


class NotFoundError(PointsError):
    pass


class AccountNotFound(NotFoundError):
    pass


class TaskNotFound(NotFoundError):
    pass


class CourseNotFound(NotFoundError):
    pass


class ItemNotFound(NotFoundError):
    pass


class SpendRejected(PointsError):
    pass


class OutOfStock(SpendRejected):
    pass


class InsufficientBalance(SpendRejected):
    def __init__(self, balance: int, price: int):
        self.balance = balance
        self.price = price
        super().__init__(
            f"Insufficient points: balance {balance}, price {price}, "
            f"short by {price - balance}"
        )


class StorageFailure(PointsError):
    pass


class ActivityNotFound(NotFoundError):
    pass


class VoteOptionNotFound(NotFoundError):
    pass


class ActivityRejected(PointsError):
    pass


class ActivityClosed(ActivityRejected):
    pass


class ActivityFull(ActivityRejected):
    pass


class AlreadyVoted(ActivityRejected):
    pass

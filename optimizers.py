"""
Optimizer Selection
===================

Wraps the first-order optimizers offered by the lab behind one interface. Only
the learning rate is configurable; the remaining hyperparameters are fixed per
optimizer. Unknown optimizer names fall back to plain SGD.
"""

from enum import Enum
from typing import Callable, Iterable, Union
import torch
from torch import Tensor


class OptimizerType(str, Enum):
    SGD = "SGD"
    ADAM = "Adam"
    ADAGRAD = "Adagrad"
    RMSPROP = "RMSProp"

    @classmethod
    def from_name(cls, name: Union[str, "OptimizerType", None]) -> "OptimizerType":
        if isinstance(name, cls):
            return name
        for member in cls:
            if member.value == name:
                return member
        return cls.SGD


def build_optimizer(
    parameters: Iterable[torch.nn.Parameter],
    optimizer_type: Union[str, OptimizerType],
    learning_rate: float,
) -> torch.optim.Optimizer:
    """Instantiate the torch optimizer for the given type."""
    optimizer_type = OptimizerType.from_name(optimizer_type)
    params = list(parameters)

    if optimizer_type is OptimizerType.ADAM:
        return torch.optim.Adam(params, lr=learning_rate, betas=(0.9, 0.999))
    if optimizer_type is OptimizerType.ADAGRAD:
        return torch.optim.Adagrad(params, lr=learning_rate)
    if optimizer_type is OptimizerType.RMSPROP:
        return torch.optim.RMSprop(
            params, lr=learning_rate, alpha=0.9, momentum=0.0, eps=1e-8, centered=False
        )
    return torch.optim.SGD(params, lr=learning_rate)


class OptimizerAdapter:
    """
    Applies one optimizer step per `update` call to a fixed parameter list.
    """

    def __init__(
        self,
        parameters: Iterable[torch.nn.Parameter],
        optimizer_type: Union[str, OptimizerType] = OptimizerType.SGD,
        learning_rate: float = 0.01,
    ):
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}.")
        self.parameters = list(parameters)
        self.optimizer_type = OptimizerType.from_name(optimizer_type)
        self.learning_rate = learning_rate
        self.optimizer = build_optimizer(self.parameters, self.optimizer_type, learning_rate)

    def update(self, loss_fn: Callable[[], Tensor]) -> float:
        """Evaluate loss_fn afresh, backpropagate and step. Returns the loss value."""
        self.optimizer.zero_grad()
        loss = loss_fn()
        loss.backward()
        self.optimizer.step()
        return loss.item()

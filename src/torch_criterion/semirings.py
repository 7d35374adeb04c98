r"""Log-space semiring used by the forward-backward trellises.

:class:`LogSemiring` is :math:`(\mathbb{R} \cup \{-\infty\}, \text{logsumexp}, +)`.
Criterion nodes use it instead of exponentiating raw scores so that
partition functions of long sequences neither overflow nor underflow.

Examples::

    >>> LogSemiring.plus(torch.tensor(0.0), torch.tensor(0.0))
    tensor(0.6931)
    >>> LogSemiring.sum(torch.zeros(4), dim=-1)
    tensor(1.3863)
"""

import torch

from .config import LOG_ZERO


class LogSemiring:
    r"""Log-space semiring.

    Operations:

    - :math:`\oplus`: ``torch.logsumexp``
    - :math:`\otimes`: ``+``
    - :math:`\bar{0}`: :data:`~torch_criterion.config.LOG_ZERO`
    - :math:`\bar{1}`: ``0.0``
    """

    zero = LOG_ZERO
    one = 0.0

    @staticmethod
    def sum(xs, dim=-1):
        return torch.logsumexp(xs, dim=dim)

    @staticmethod
    def mul(a, b):
        return a + b

    @staticmethod
    def plus(a, b):
        r"""plus(a, b) -> Tensor

        Binary log-add: :math:`\log(e^a + e^b)` without overflow.
        """
        return torch.logaddexp(a, b)

    @classmethod
    def matmul(cls, a, b):
        r"""matmul(a, b) -> Tensor

        Computes :math:`C_{ij} = \bigoplus_k A_{ik} \otimes B_{kj}`.
        """
        return cls.sum(a.unsqueeze(-1) + b.unsqueeze(-3), dim=-2)

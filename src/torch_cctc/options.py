r"""Training options for the CCTC objective."""

import argparse
import math
from dataclasses import dataclass

from .constants import CONSISTENCY_RTOL
from .validation import CctcConfigurationError


@dataclass
class CctcTrainingOptions:
    r"""Options for :class:`~torch_cctc.training.CctcCommonComputation`.

    Args:
        denominator_scale (float): Scale on the denominator (negative) term of
            the objective function; you can set it to e.g. 0.9 to encourage the
            probabilities to sum to one more closely. Default: ``1.0``
        check_consistency (bool): Cross-check the total log-probability of the
            forward pass against the one recovered from the backward pass.
            Default: ``True``
        consistency_rtol (float): Relative tolerance of that check.
            Default: ``1e-5``

    Examples::

        >>> parser = argparse.ArgumentParser()
        >>> CctcTrainingOptions.add_argparse_args(parser)
        >>> opts = CctcTrainingOptions.from_args(parser.parse_args(["--denominator-scale", "0.9"]))
        >>> opts.denominator_scale
        0.9
    """

    denominator_scale: float = 1.0
    check_consistency: bool = True
    consistency_rtol: float = CONSISTENCY_RTOL

    def __post_init__(self):
        if not math.isfinite(self.denominator_scale) or self.denominator_scale <= 0:
            raise CctcConfigurationError(
                f"denominator_scale must be a positive real, got {self.denominator_scale}"
            )
        if self.consistency_rtol <= 0:
            raise CctcConfigurationError(
                f"consistency_rtol must be positive, got {self.consistency_rtol}"
            )

    @staticmethod
    def add_argparse_args(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
        """Registers the options on ``parser`` (``--denominator-scale`` etc.)."""
        group = parser.add_argument_group("CCTC training options")
        group.add_argument(
            "--denominator-scale",
            type=float,
            default=1.0,
            help="Scale on the denominator term in the objective function; you can "
            "set it to e.g. 0.9 to encourage the probabilities to sum to one more closely.",
        )
        group.add_argument(
            "--no-check-consistency",
            dest="check_consistency",
            action="store_false",
            help="Skip the forward/backward total log-probability cross check.",
        )
        group.add_argument(
            "--consistency-rtol",
            type=float,
            default=CONSISTENCY_RTOL,
            help="Relative tolerance of the forward/backward cross check.",
        )
        return parser

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "CctcTrainingOptions":
        return cls(
            denominator_scale=args.denominator_scale,
            check_consistency=getattr(args, "check_consistency", True),
            consistency_rtol=getattr(args, "consistency_rtol", CONSISTENCY_RTOL),
        )

r"""Numerical constants shared by the CCTC computations."""

import math

import torch

# Log-domain stand-in for log(0) in float64 DP state; finite so that
# alpha + beta - total never produces NaN for unreachable states.
NEG_INF = -1e30

# Linear-domain floor applied to looked-up probabilities before the log.
PROB_FLOOR = torch.finfo(torch.float32).tiny
LOG_PROB_FLOOR = math.log(PROB_FLOOR)

# Relative tolerance for the alpha/beta total-log-prob cross check.
CONSISTENCY_RTOL = 1e-5
CONSISTENCY_ATOL = 1e-8

# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
Deltagrad — a neural network training engine on NumPy.

Layers are wired into DAG networks; a forward pass produces a tape of
:class:`Result` objects, and back-propagating an error signal collects
parameter gradients into a :class:`DeltaSet`.  The optimizer package
drives measure / orient / line-search loops over those gradients.

Usage::

    import deltagrad as dg
    import deltagrad.nn as nn
    import deltagrad.optim as optim

    net = nn.DAGNetwork(inputs=2)
    fc = net.add(nn.FullyConnectedLayer(3, 1), net.input(0))
    net.add(nn.MeanSqLossLayer(), fc, net.input(1))

    trainer = optim.IterativeTrainer(optim.BasicTrainable(net, [x, y]))
    trainer.run()
"""
from __future__ import annotations

import logging

__version__ = "0.1.0"
__author__ = "Pictofeed, LLC"

logging.getLogger(__name__).addHandler(logging.NullHandler())

# ── Errors ──
from .errors import (
    DeltaGradError,
    ShapeMismatchError,
    NonFiniteError,
    GraphConfigurationError,
    DeviceOutOfMemoryError,
    IterativeStopException,
)

# ── Config ──
from .config import get_config, override

# ── Dtype / device ──
from .dtype import Precision, double, float32, float16
from .device import device

# ── Tensors ──
from .tensor import Tensor, TensorList, tensor, batch

# ── Autograd ──
from .autograd import (
    DeltaBuffer,
    DeltaSet,
    StateSet,
    GradFn,
    Result,
    ConstantResult,
    MutableResult,
    backward,
)

# ── Submodules ──
from . import nn
from . import optim
from . import cuda
from . import testing

__all__ = [
    'DeltaGradError', 'ShapeMismatchError', 'NonFiniteError',
    'GraphConfigurationError', 'DeviceOutOfMemoryError',
    'IterativeStopException',
    'get_config', 'override',
    'Precision', 'double', 'float32', 'float16', 'device',
    'Tensor', 'TensorList', 'tensor', 'batch',
    'DeltaBuffer', 'DeltaSet', 'StateSet', 'GradFn', 'Result',
    'ConstantResult', 'MutableResult', 'backward',
    'nn', 'optim', 'cuda', 'testing',
]

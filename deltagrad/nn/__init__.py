# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""deltagrad.nn — layers and layer graphs."""
from __future__ import annotations

# Layer base class
from .layer import Layer

# Capability traits
from .capabilities import (
    MultiPrecision,
    DeviceResident,
    Explodable,
    supports,
    set_precision,
)

# Layers
from .layers import (
    ActivationLayer,
    LinearActivationLayer,
    SumReducerLayer,
    AvgReducerLayer,
    MeanSqLossLayer,
    SumInputsLayer,
    ProductInputsLayer,
    ConcatLayer,
    ReshapeLayer,
    BiasLayer,
    FullyConnectedLayer,
    ConvolutionLayer,
)

# Graphs
from .network import (
    DAGNetwork,
    PipelineNetwork,
    GraphEvaluationContext,
    InnerNode,
    InputNode,
)

from . import init

__all__ = [
    'Layer',
    'MultiPrecision', 'DeviceResident', 'Explodable', 'supports',
    'set_precision',
    'ActivationLayer', 'LinearActivationLayer', 'SumReducerLayer',
    'AvgReducerLayer', 'MeanSqLossLayer', 'SumInputsLayer',
    'ProductInputsLayer', 'ConcatLayer', 'ReshapeLayer', 'BiasLayer',
    'FullyConnectedLayer', 'ConvolutionLayer',
    'DAGNetwork', 'PipelineNetwork', 'GraphEvaluationContext',
    'InnerNode', 'InputNode', 'init',
]

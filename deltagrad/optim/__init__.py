# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""deltagrad.optim — trainables, search directions, line searches and the
training loop."""
from __future__ import annotations

from .sample import PointSample, Measurement
from .trainable import (Trainable, BasicTrainable, SampledTrainable,
                        ParallelTrainable, L12Normalizer)
from .orient import (LineSearchPoint, LineSearchCursor,
                     SimpleLineSearchCursor, QuadraticLineSearchCursor,
                     FailsafeLineSearchCursor, OrientationStrategy,
                     GradientDescent, MomentumStrategy, LBFGS, QQN)
from .line_search import (LineSearchStrategy, StaticLearningRate,
                          QuadraticSearch, ArmijoWolfeSearch)
from .trainer import IterativeTrainer, TrainingMonitor, Step

__all__ = [
    'PointSample', 'Measurement',
    'Trainable', 'BasicTrainable', 'SampledTrainable', 'ParallelTrainable',
    'L12Normalizer',
    'LineSearchPoint', 'LineSearchCursor', 'SimpleLineSearchCursor',
    'QuadraticLineSearchCursor', 'FailsafeLineSearchCursor',
    'OrientationStrategy', 'GradientDescent', 'MomentumStrategy', 'LBFGS',
    'QQN',
    'LineSearchStrategy', 'StaticLearningRate', 'QuadraticSearch',
    'ArmijoWolfeSearch',
    'IterativeTrainer', 'TrainingMonitor', 'Step',
]

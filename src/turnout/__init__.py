"""Turnout - Bayesian beta regression of county voter turnout."""

__version__ = "2026.10.18"

from turnout.dataset import Dataset as Dataset
from turnout.dataset import Split as Split
from turnout.dataset import load_dataset as load_dataset
from turnout.dataset import split_indices as split_indices
from turnout.dataset import train_test_split as train_test_split
from turnout.errors import ConfigError as ConfigError
from turnout.errors import ConvergenceError as ConvergenceError
from turnout.errors import EngineError as EngineError
from turnout.errors import LoadError as LoadError
from turnout.errors import SpecError as SpecError

"""
boltzkit Test Suite

Test Structure:
- test_truncnorm.py: Truncated normal moments, samplers and pathwise gradients
- test_layers.py: cgf identities, normalization and sampling of every layer
- test_tensor.py: Contractions and their custom gradients
- test_models.py: RBM energies, sampling, flipping and checkpoints
- test_training.py: CD loss, trainer, callbacks (and the soak test)
- test_data.py: Weighted datasets and loaders
- test_config.py: Configuration loading and validation

Usage:
    # Run all tests
    python tests/run_tests.py

    # Run specific test module
    python tests/run_tests.py --test test_layers

    # Include the planted-model soak test
    python tests/run_tests.py --soak
"""

import sys
import warnings
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Suppress warnings during testing
warnings.filterwarnings('ignore', category=FutureWarning)

import argparse
import json
import os
import yaml # Requires PyYAML to be installed

from ..data_io.errors import DWIConfigurationError

# Built-in option values, used when neither the command line nor a config file sets them.
DEFAULT_OPTIONS = {
    'allow_lossy_conversion': False,
    'use_identity_measurement_frame': False,
    'use_bmatrix_gradient_directions': False,
    'small_gradient_threshold': 0.2,
    'fsl_horizontal_by_3_rows': True,
}

# --- Argument Parsing Helpers ---

def add_common_conversion_args(parser: argparse.ArgumentParser):
    """Adds the options shared by every conversion subcommand."""
    parser.add_argument('--config', help="Path to a JSON or YAML file with default option values.")
    parser.add_argument('--allow_lossy_conversion', action='store_true', default=None,
                        help="Allow narrowing pixel data that does not fit in int16 (values are rounded and clipped).")
    parser.add_argument('--use_identity_measurement_frame', action='store_true', default=None,
                        help="Rotate gradients into the image frame and write an identity measurement frame.")
    parser.add_argument('--small_gradient_threshold', type=float, default=None,
                        help="Non-zero gradients shorter than this are rejected when reading DICOM (default: 0.2).")
    parser.add_argument('--fsl_vertical', dest='fsl_horizontal_by_3_rows', action='store_false', default=None,
                        help="Read/write FSL sidecars one entry per line (Nx3 b-vectors) instead of 3 rows.")
    return parser

def add_dicom_gradient_args(parser: argparse.ArgumentParser):
    """Adds the options that only apply when gradients are read from DICOM."""
    parser.add_argument('--use_bmatrix_gradient_directions', action='store_true', default=None,
                        help="Derive b-values and directions from the DiffusionBMatrixSequence instead of "
                             "DiffusionBValue / DiffusionGradientOrientation.")
    return parser

def add_gradient_override_args(parser: argparse.ArgumentParser):
    """Adds --input_bval / --input_bvec for replacing the gradient table."""
    parser.add_argument('--input_bval', help="FSL b-values file that replaces the gradients found in the input "
                                             "(default when only --input_bvec is given: <input stem>.bval).")
    parser.add_argument('--input_bvec', help="FSL b-vectors file that replaces the gradients found in the input "
                                             "(default when only --input_bval is given: <input stem>.bvec).")
    return parser


# --- Configuration ---

def load_config_from_json_yaml(filepath: str) -> dict:
    """Loads parameters from a JSON or YAML configuration file."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    ext = os.path.splitext(filepath)[1].lower()
    config = {}
    with open(filepath, 'r') as f:
        if ext == '.json':
            config = json.load(f)
        elif ext in ['.yaml', '.yml']:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Error parsing YAML file {filepath}: {e}")
        else:
            raise ValueError(f"Unsupported configuration file format: {ext}. Use .json or .yaml.")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValueError(f"Configuration file {filepath} must contain a mapping, got {type(config).__name__}.")
    return config

def resolve_options(args: argparse.Namespace) -> dict:
    """
    Merges option values: command line first, then the --config file, then
    :data:`DEFAULT_OPTIONS`. Unknown config keys are rejected.
    """
    config = {}
    if getattr(args, 'config', None):
        config = load_config_from_json_yaml(args.config)
        unknown = sorted(set(config) - set(DEFAULT_OPTIONS))
        if unknown:
            raise ValueError(f"Unknown configuration keys in {args.config}: {', '.join(unknown)}")

    options = {}
    for key, default in DEFAULT_OPTIONS.items():
        value = getattr(args, key, None)
        if value is None:
            value = config.get(key, default)
        options[key] = value

    options['small_gradient_threshold'] = float(options['small_gradient_threshold'])
    if options['small_gradient_threshold'] < 0:
        raise DWIConfigurationError(f"small_gradient_threshold must be non-negative, got {options['small_gradient_threshold']}.")
    return options

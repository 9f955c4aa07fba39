import argparse
import os
import sys

import numpy as np

from dwiconvert.data_io.converter import DWIConverter
from dwiconvert.data_io.dicom_utils import DicomDWISource
from dwiconvert.data_io.gradients import create_gradient_table
from dwiconvert.data_io.nifti import FSLDWISource
from dwiconvert.data_io.nrrd_utils import NrrdDWISource
from dwiconvert.cli.cli_utils import (add_common_conversion_args, add_dicom_gradient_args,
                                      add_gradient_override_args, resolve_options)


# --- Shared conversion steps ---

def _apply_gradient_override(converter: DWIConverter, args, volume_template: str = None):
    if args.input_bval or args.input_bvec:
        converter.read_gradient_information(args.input_bval, args.input_bvec, volume_template=volume_template)
        print(f"Gradient table replaced from {args.input_bval or '<derived>'} / {args.input_bvec or '<derived>'}")


def _write_nrrd_output(converter: DWIConverter, output_nrrd: str, options: dict, conversion_mode: str,
                       use_bmatrix_gradient_directions: bool = False):
    if options['use_identity_measurement_frame']:
        converter.convert_bvectors_to_identity_measurement_frame()
    converter.convert_to_single_bvalue_scaled_diffusion_vectors()
    comment = converter.make_file_comment(
        conversion_mode,
        use_identity_measurement_frame=options['use_identity_measurement_frame'],
        small_gradient_threshold=options['small_gradient_threshold'],
        use_bmatrix_gradient_directions=use_bmatrix_gradient_directions
    )
    data_filepath = converter.write_nrrd(output_nrrd, comment=comment)
    print(f"NRRD header saved to: {output_nrrd}")
    if data_filepath:
        print(f"NRRD data saved to: {data_filepath}")


def _write_fsl_output(converter: DWIConverter, args):
    # Per-volume b-values (DICOM, FSL overrides) are folded into vector length first.
    converter.convert_to_single_bvalue_scaled_diffusion_vectors()
    converter.convert_bvectors_to_identity_measurement_frame()
    converter.convert_to_multiple_bvalues_unit_scaled_bvectors()
    bval_filepath, bvec_filepath = converter.write_fsl_formatted_file_set(
        args.output_nifti, args.output_bval, args.output_bvec
    )
    print(f"NIfTI volume saved to: {args.output_nifti}")
    print(f"b-values saved to: {bval_filepath}")
    print(f"b-vectors saved to: {bvec_filepath}")
    _print_gradient_summary(converter)


def _print_gradient_summary(converter: DWIConverter):
    """Reports b0 count and shells as seen by Dipy; a rejected table is only a warning."""
    table = converter.gradient_table
    try:
        gtab = create_gradient_table(table.bvals, table.bvecs)
    except ValueError as e:
        print(f"Warning: Dipy could not build a gradient table from the written files: {e}", file=sys.stderr)
        return
    shells = np.unique(gtab.bvals[~gtab.b0s_mask]).tolist()
    print(f"Gradient summary: {int(gtab.b0s_mask.sum())} b0 volume(s), "
          f"{int((~gtab.b0s_mask).sum())} diffusion-weighted volume(s), shells {shells}")


# --- DICOM to NRRD ---

def setup_dicom_to_nrrd_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_dicom_dir', required=True, help="Directory holding the DWI DICOM series.")
    parser.add_argument('--output_nrrd', required=True, help="Output '.nrrd' (single file) or '.nhdr' (header + .raw).")
    add_gradient_override_args(parser)
    add_dicom_gradient_args(parser)
    add_common_conversion_args(parser)
    parser.set_defaults(func=run_dicom_to_nrrd)

def run_dicom_to_nrrd(args):
    print(f"Converting DICOM series: {args.input_dicom_dir} to NRRD: {args.output_nrrd}")
    try:
        options = resolve_options(args)
        source = DicomDWISource(args.input_dicom_dir,
                                small_gradient_threshold=options['small_gradient_threshold'],
                                allow_lossy_conversion=options['allow_lossy_conversion'],
                                use_bmatrix_gradient_directions=options['use_bmatrix_gradient_directions'])
        converter = DWIConverter.from_source(
            source, fsl_file_format_horizontal_by_3_rows=options['fsl_horizontal_by_3_rows'])
        _apply_gradient_override(converter, args, volume_template=os.path.normpath(args.input_dicom_dir))
        _write_nrrd_output(converter, args.output_nrrd, options, "DicomToNrrd",
                           use_bmatrix_gradient_directions=options['use_bmatrix_gradient_directions'])
        print("DICOM to NRRD conversion successful.")
    except Exception as e:
        print(f"Error during DICOM to NRRD conversion: {e}", file=sys.stderr)
        sys.exit(1)


# --- DICOM to FSL ---

def setup_dicom_to_fsl_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_dicom_dir', required=True, help="Directory holding the DWI DICOM series.")
    parser.add_argument('--output_nifti', required=True, help="Output '.nii' or '.nii.gz' volume.")
    parser.add_argument('--output_bval', help="Output b-values file (default: next to the volume).")
    parser.add_argument('--output_bvec', help="Output b-vectors file (default: next to the volume).")
    add_gradient_override_args(parser)
    add_dicom_gradient_args(parser)
    add_common_conversion_args(parser)
    parser.set_defaults(func=run_dicom_to_fsl)

def run_dicom_to_fsl(args):
    print(f"Converting DICOM series: {args.input_dicom_dir} to FSL: {args.output_nifti}")
    try:
        options = resolve_options(args)
        source = DicomDWISource(args.input_dicom_dir,
                                small_gradient_threshold=options['small_gradient_threshold'],
                                allow_lossy_conversion=options['allow_lossy_conversion'],
                                use_bmatrix_gradient_directions=options['use_bmatrix_gradient_directions'])
        converter = DWIConverter.from_source(
            source, fsl_file_format_horizontal_by_3_rows=options['fsl_horizontal_by_3_rows'])
        _apply_gradient_override(converter, args, volume_template=os.path.normpath(args.input_dicom_dir))
        _write_fsl_output(converter, args)
        print("DICOM to FSL conversion successful.")
    except Exception as e:
        print(f"Error during DICOM to FSL conversion: {e}", file=sys.stderr)
        sys.exit(1)


# --- NRRD to FSL ---

def setup_nrrd_to_fsl_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_nrrd', required=True, help="Input DWI '.nrrd' or '.nhdr' file.")
    parser.add_argument('--output_nifti', required=True, help="Output '.nii' or '.nii.gz' volume.")
    parser.add_argument('--output_bval', help="Output b-values file (default: next to the volume).")
    parser.add_argument('--output_bvec', help="Output b-vectors file (default: next to the volume).")
    add_gradient_override_args(parser)
    add_common_conversion_args(parser)
    parser.set_defaults(func=run_nrrd_to_fsl)

def run_nrrd_to_fsl(args):
    print(f"Converting NRRD file: {args.input_nrrd} to FSL: {args.output_nifti}")
    try:
        options = resolve_options(args)
        source = NrrdDWISource(args.input_nrrd, allow_lossy_conversion=options['allow_lossy_conversion'])
        converter = DWIConverter.from_source(
            source, fsl_file_format_horizontal_by_3_rows=options['fsl_horizontal_by_3_rows'])
        _apply_gradient_override(converter, args, volume_template=args.input_nrrd)
        _write_fsl_output(converter, args)
        print("NRRD to FSL conversion successful.")
    except Exception as e:
        print(f"Error during NRRD to FSL conversion: {e}", file=sys.stderr)
        sys.exit(1)


# --- FSL to NRRD ---

def setup_fsl_to_nrrd_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_nifti', required=True, help="Input '.nii' or '.nii.gz' DWI volume.")
    parser.add_argument('--input_bval', help="Input b-values file (default: next to the volume).")
    parser.add_argument('--input_bvec', help="Input b-vectors file (default: next to the volume).")
    parser.add_argument('--output_nrrd', required=True, help="Output '.nrrd' (single file) or '.nhdr' (header + .raw).")
    add_common_conversion_args(parser)
    parser.set_defaults(func=run_fsl_to_nrrd)

def run_fsl_to_nrrd(args):
    print(f"Converting FSL file set: {args.input_nifti} to NRRD: {args.output_nrrd}")
    try:
        options = resolve_options(args)
        source = FSLDWISource(args.input_nifti, args.input_bval, args.input_bvec,
                              horizontal_by_3_rows=options['fsl_horizontal_by_3_rows'],
                              allow_lossy_conversion=options['allow_lossy_conversion'])
        converter = DWIConverter.from_source(
            source, fsl_file_format_horizontal_by_3_rows=options['fsl_horizontal_by_3_rows'])
        _write_nrrd_output(converter, args.output_nrrd, options, "FSLToNrrd")
        print("FSL to NRRD conversion successful.")
    except Exception as e:
        print(f"Error during FSL to NRRD conversion: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Convert diffusion-weighted images between DICOM, NRRD and FSL (NIfTI + bval/bvec).",
        formatter_class=argparse.RawTextHelpFormatter
    )
    subparsers = parser.add_subparsers(title="Available Commands", dest="command_dwi_conversion")
    subparsers.required = True

    dicom_to_nrrd_parser = subparsers.add_parser(
        "dicom2nrrd",
        help="Convert a DWI DICOM series to NRRD.",
        description="Reads a DICOM DWI series and writes a single b-value NRRD with scaled gradient vectors."
    )
    setup_dicom_to_nrrd_parser(dicom_to_nrrd_parser)

    dicom_to_fsl_parser = subparsers.add_parser(
        "dicom2fsl",
        help="Convert a DWI DICOM series to NIfTI + bval/bvec.",
        description="Reads a DICOM DWI series and writes a 4D NIfTI with FSL sidecars."
    )
    setup_dicom_to_fsl_parser(dicom_to_fsl_parser)

    nrrd_to_fsl_parser = subparsers.add_parser(
        "nrrd2fsl",
        help="Convert a DWI NRRD to NIfTI + bval/bvec.",
        description="Reads a DWI NRRD and writes a 4D NIfTI with unit b-vectors and per-volume b-values."
    )
    setup_nrrd_to_fsl_parser(nrrd_to_fsl_parser)

    fsl_to_nrrd_parser = subparsers.add_parser(
        "fsl2nrrd",
        help="Convert NIfTI + bval/bvec to a DWI NRRD.",
        description="Reads a 4D NIfTI with FSL sidecars and writes a single b-value NRRD."
    )
    setup_fsl_to_nrrd_parser(fsl_to_nrrd_parser)

    if argv is None:
        argv = sys.argv[1:]
    if not argv:
        parser.print_help(sys.stderr)
        sys.exit(1)

    args = parser.parse_args(argv)

    if hasattr(args, 'func'):
        args.func(args)
    else:
        print(f"No function associated with command: {args.command_dwi_conversion}", file=sys.stderr)
        parser.print_help(sys.stderr)
        sys.exit(1)

if __name__ == '__main__':
    main()

#!/usr/bin/env python3
"""
Main entry point for human-assisted georeferencing.
Supports command-line execution and configuration file input.
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path
import logging

import rasterio

from constraints import constraint_from_dict
from debug_visualizations import plot_deformation_lattice, plot_residual_vectors
from defaults import ERROR_UNITS, GLOBAL_METHODS, LOCAL_MODELS
from errors import RegistrationError, UnsupportedForProjExport
from registration_lib import GeorefSession, RegistrationConfig
from utils import create_output_directory, read_json, setup_logging, write_json


def load_config(config_path: str) -> dict:
    """Load configuration from JSON file."""
    return read_json(config_path)


def save_config(config: dict, output_dir: Path):
    """Save configuration to output directory for reproducibility."""
    config_path = write_json(config, output_dir / 'run_config.json')
    logging.info(f"Configuration saved to: {config_path}")


def load_constraints(path: str) -> list:
    """Constraints from a JSON list (or {"constraints": [...]}) of kind-tagged dicts."""
    data = read_json(path)
    if isinstance(data, dict):
        data = data.get('constraints', [])
    return [constraint_from_dict(item) for item in data]


def write_report(session: GeorefSession, output_dir: Path, proj_string) -> Path:
    """JSON and text report of the published solution."""
    metrics = session.quality_metrics
    stack = session.transform_stack
    report = {
        'timestamp': datetime.now().isoformat(),
        'configuration': session.config.to_dict(),
        'num_constraints': len(session.store),
        'transform_stack': stack.to_dict() if stack else None,
        'quality_metrics': metrics.to_dict() if metrics else None,
        'proj_pipeline': proj_string,
        'reference_crs': session.get_reference_crs(),
    }
    report_file = write_json(report, output_dir / 'registration_report.json')

    text_file = output_dir / 'registration_report.txt'
    with open(text_file, 'w') as f:
        f.write("=" * 80 + "\n")
        f.write("GEOREFERENCING REPORT\n")
        f.write("=" * 80 + "\n\n")
        f.write(f"Timestamp: {report['timestamp']}\n")
        f.write(f"Constraints: {report['num_constraints']}\n")
        f.write(f"Stack: {stack!r}\n\n")
        if metrics is not None:
            f.write(f"RMSE: {metrics.rmse:.6f} {metrics.unit}\n")
            f.write(f"P90:  {metrics.p90_error:.6f} {metrics.unit}\n")
            if metrics.warnings:
                f.write(f"Warnings: {', '.join(metrics.warnings)}\n")
            f.write("\nResiduals by constraint:\n")
            for cid, r in sorted(metrics.residuals_by_id.items()):
                flag = ' (masked)' if cid in metrics.excluded_ids else ''
                f.write(f"  {cid:5d}: {r:.6f}{flag}\n")
        if proj_string:
            f.write(f"\nPROJ pipeline:\n  {proj_string}\n")
    logging.info(f"Report saved to: {report_file}")
    return report_file


def main():
    parser = argparse.ArgumentParser(
        description='Georeference a source document against a reference raster from user constraints'
    )

    parser.add_argument('--config', type=str, help='Path to configuration JSON file')
    parser.add_argument('--session', type=str, help='Existing session JSON to reopen')
    parser.add_argument('--constraints', type=str, help='JSON file of constraints to add')
    parser.add_argument('--reference', type=str,
                        help='Reference GeoTIFF, or raster/base path with a world file (+ .prj)')
    parser.add_argument('--source', type=str,
                        help='Source raster (sets the source bounds and enables GeoTIFF export)')
    parser.add_argument('--method', type=str, choices=GLOBAL_METHODS,
                        help='Global transform family (overrides config)')
    parser.add_argument('--error-unit', type=str, choices=ERROR_UNITS,
                        help='Unit for quality metrics (overrides config)')
    parser.add_argument('--map-scale', type=float,
                        help='Map scale denominator, e.g. 10000 for 1:10000 (required for mapmm)')
    parser.add_argument('--local', type=str, choices=LOCAL_MODELS,
                        help='Layer a local warp after the global solve')
    parser.add_argument('--lambda', dest='lam', type=float, help='Local warp regularization')
    parser.add_argument('--output-dir', type=str, help='Output directory (overrides config)')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
    parser.add_argument('--debug-level', type=str, choices=['none', 'intermediate', 'high'],
                        help='Debug plot level (overrides config)')

    args = parser.parse_args()

    config_dict = load_config(args.config) if args.config else {}

    # Override config with command-line arguments
    if args.method:
        config_dict['method'] = args.method
    if args.error_unit:
        config_dict['error_unit'] = args.error_unit
    if args.map_scale is not None:
        config_dict['map_scale'] = args.map_scale
    if args.local:
        config_dict['local_model'] = args.local
    if args.lam is not None:
        config_dict['lam'] = args.lam
    if args.output_dir:
        config_dict['output_dir'] = args.output_dir
    if args.verbose:
        config_dict['verbose'] = True
    if args.debug_level:
        config_dict['debug_level'] = args.debug_level

    if not args.session and not args.constraints:
        print("Error: provide --session and/or --constraints")
        sys.exit(1)

    try:
        config = RegistrationConfig.from_dict(config_dict)
    except (TypeError, ValueError) as e:
        print(f"Error: invalid configuration: {e}")
        sys.exit(1)

    # Setup output directory and logging
    output_dir = create_output_directory(config.output_dir)
    setup_logging(output_dir, verbose=config.verbose)

    logging.info("=" * 80)
    logging.info("GEOREFERENCING")
    logging.info("=" * 80)
    logging.info(f"Timestamp: {datetime.now().isoformat()}")
    logging.info(f"Session: {args.session or '(new)'}")
    logging.info(f"Constraints: {args.constraints or '(none added)'}")
    logging.info(f"Reference: {args.reference or '(none)'}")
    logging.info(f"Method: {config.method}")
    logging.info(f"Error unit: {config.error_unit}")
    logging.info(f"Local warp: {config.local_model or 'none'}")
    logging.info(f"Output directory: {output_dir}")
    logging.info("=" * 80)

    save_config(config.to_dict(), output_dir)

    try:
        if args.source and config.source_bounds is None:
            with rasterio.open(args.source) as src:
                config.source_bounds = [src.width, src.height]

        if args.session:
            session = GeorefSession.load(args.session, config)
        else:
            session = GeorefSession(config)

        if args.reference:
            session.load_reference(args.reference)

        if args.constraints:
            for constraint in load_constraints(args.constraints):
                session.add_constraint(constraint)
            logging.info(f"Session holds {len(session.store)} constraints")

        logging.info("\nSolving global model...")
        session.solve_global(config.method, config.error_unit, config.map_scale)

        if config.local_model:
            logging.info(f"\nSolving local {config.local_model} warp...")
            session.solve_local(config.local_model, config.lam)

        try:
            proj_string = session.get_proj_string(config.method)
            (output_dir / 'proj_pipeline.txt').write_text(proj_string + '\n')
        except UnsupportedForProjExport as e:
            logging.warning(f"PROJ export skipped: {e}")
            proj_string = None

        if session.get_reference_georef() is not None and session.transform_stack.is_affine():
            session.export_georeferenced_world_file(output_dir / 'georeferenced')
            if args.source:
                session.export_geotiff(args.source, output_dir / 'georeferenced.tif')

        session.save(output_dir / 'session.json')
        write_report(session, output_dir, proj_string)

        if config.debug_level != 'none':
            viz_dir = output_dir / 'visualizations'
            plot_residual_vectors(session.transform_stack, session.list_constraints(),
                                  viz_dir / 'residual_vectors.png', session.quality_metrics)
            if config.debug_level == 'high' and session.store.source_bounds is not None:
                width, height = session.store.source_bounds
                plot_deformation_lattice(session.transform_stack, (0, 0, width, height),
                                         viz_dir / 'deformation_lattice.png')

        metrics = session.quality_metrics
        logging.info("\n" + "=" * 80)
        logging.info("GEOREFERENCING COMPLETED SUCCESSFULLY")
        logging.info(f"RMSE: {metrics.rmse:.4f} {metrics.unit} | P90: {metrics.p90_error:.4f} {metrics.unit}")
        logging.info(f"All outputs saved to: {output_dir}")
        logging.info("=" * 80)

    except RegistrationError as e:
        logging.error(f"Georeferencing failed ({type(e).__name__}): {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Georeferencing failed with error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()

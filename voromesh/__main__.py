"""
CLI entry point for the voromesh package
"""

import argparse
import sys
import logging
from pathlib import Path

def setup_logging(verbose=False, log_file=None):
    """Setup logging configuration"""
    level = logging.DEBUG if verbose else logging.INFO
    format_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=handlers,
        force=True
    )

def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Voronoi volume mesh generation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Generate a mesh for a case (reads <case>/system/meshDict.json)
  python -m voromesh generate cases/cube

  # Resume from the optimisation step using the mesh already in the case
  python -m voromesh generate cases/cube --resume-from meshOptimisation

  # Run the pipeline without writing the polyMesh
  python -m voromesh generate cases/cube --no-write --verbose
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command')

    generate_parser = subparsers.add_parser('generate', help='Generate a volume mesh for a case')
    generate_parser.add_argument('case', help='Case directory (surface paths are relative to it)')
    generate_parser.add_argument('--mesh-dict', help='meshDict file (default: <case>/system/meshDict.json)')
    generate_parser.add_argument('--resume-from', help='Name of the step to resume from')
    generate_parser.add_argument('--no-write', action='store_true', help='Do not write the mesh')
    generate_parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    case_dir = Path(args.case)
    if not case_dir.is_dir():
        print(f"Case directory not found: {case_dir}", file=sys.stderr)
        return 1

    setup_logging(args.verbose, case_dir / "voromesh.log")
    logger = logging.getLogger('voromesh.cli')

    try:
        from .generator import MeshDict, MeshOutputContext, VoronoiMeshGenerator
        from .generator.constants import LAST_STEP_KEY, STAGE_NAMES
        from .generator.mesh_io import has_poly_mesh, read_poly_mesh
        from .utils import system_resources

        resources = system_resources()
        logger.info(f"🖥️  System: {resources['available_memory_gb']:.1f}GB RAM available, "
                    f"{resources['cpu_count']} CPUs")

        mesh_dict = MeshDict.from_file(args.mesh_dict) if args.mesh_dict else MeshDict.from_case(case_dir)

        initial_mesh = None
        if args.resume_from:
            if has_poly_mesh(case_dir):
                initial_mesh = read_poly_mesh(case_dir)
                last_step = initial_mesh.metadata.get(LAST_STEP_KEY)
                if (last_step in STAGE_NAMES and args.resume_from in STAGE_NAMES
                        and STAGE_NAMES.index(last_step) >= STAGE_NAMES.index(args.resume_from)):
                    logger.warning(f"⚠️  Mesh in {case_dir} already completed step '{last_step}', "
                                   f"resuming from '{args.resume_from}' runs it again")
            else:
                logger.warning(f"No mesh found in {case_dir} to resume from")

        context = MeshOutputContext(case_dir)
        logger.info(f"Starting mesh generation: {case_dir}")
        with VoronoiMeshGenerator(mesh_dict, context, resume_from=args.resume_from,
                                  initial_mesh=initial_mesh) as generator:
            result = generator.build()

            if not result.success:
                logger.error(f"❌ Mesh generation failed ({result.failure}): {result.message}")
                return 1

            logger.info(f"Executed steps: {', '.join(result.executed_steps)}")
            if result.skipped_steps:
                logger.info(f"Skipped steps: {', '.join(result.skipped_steps)}")

            if args.no_write:
                logger.info("✅ Mesh generated (not written)")
            else:
                out_dir = generator.write_mesh()
                logger.info(f"✅ Mesh written: {out_dir}")

        return 0

    except Exception as e:
        logger.error(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1

if __name__ == "__main__":
    sys.exit(main())

"""
Blend file explorer - prints scenes, objects, meshes, armatures and animation
data found in a .blend file
"""
import sys

from blendlib.blend_explorer import BlendExplorer, ObjectType, load_blend
from blendlib.blend_parser import BlendCode, BlendFormatError, BlendStructuralError
from blendlib.debug_stub import DebugConsole


class BlendExplorerCLI:
    """Prints the sections of a blend file selected on the command line"""

    DEFAULT_SECTIONS = ("scenes", "objects")

    def __init__(self, filepath, sections=None, struct_names=None):
        self.filepath = filepath
        self.sections = tuple(self.DEFAULT_SECTIONS if sections is None else sections)
        self.struct_names = list(struct_names or [])
        self.blend = None
        self.explorer = None

    def load(self):
        self.blend = load_blend(self.filepath)
        self.explorer = BlendExplorer(self.blend)
        header = self.blend.header
        print(f"Blender version: {header.version} - {header.describe()}, {len(self.blend.blocks)} blocks")

    def run(self):
        self.load()
        for section in self.sections:
            print()
            getattr(self, f"print_{section}")()
        for name in self.struct_names:
            print()
            self.print_struct(name)

    def print_blocks(self):
        for block in self.blend.blocks:
            if block.is_data:
                continue
            print(self.blend.block_summary(block))
            if block.code in (BlendCode.Sdna, BlendCode.EndOfFile):
                continue
            try:
                print(self.blend.schema.format_struct(block.sdna_index))
            except (BlendFormatError, BlendStructuralError) as e:
                DebugConsole.log(f"No layout for block #{block.index}: {e}")

    def print_struct(self, name):
        text = self.blend.schema.format_struct(name)
        print(text if text is not None else f"No struct named '{name}' in this file")

    def print_scenes(self):
        for scene in self.explorer.explore_scenes():
            print(f"Scene name: {scene.name}")
            print(f"Frame range: {scene.start_frame}-{scene.end_frame}")
            if scene.master_collection:
                self._print_collection(scene.master_collection, indent=1)
            for marker in scene.markers:
                print(f"Found a time marker: {marker.name} frame: {marker.frame}")

    def _print_collection(self, collection, indent):
        pad = "  " * indent
        print(f"{pad}Collection name: {collection.name}")
        for object_name in collection.objects:
            print(f"{pad}  Object name: {object_name}")
        for child in collection.children:
            self._print_collection(child, indent + 1)

    def print_objects(self):
        kinds = {ObjectType.Mesh: "mesh", ObjectType.Armature: "armature"}
        for ob in self.explorer.explore_objects():
            print(f"Object name: {ob.name}")
            print(f"  Type: {ob.type} ({kinds.get(ob.type, 'other')})")
            if ob.data_name:
                print(f"  Data: {ob.data_name}")
            if ob.location is not None:
                print(f"  Translation: {[round(float(v), 4) for v in ob.location]}")
            if ob.scale is not None:
                print(f"  Scale: {[round(float(v), 4) for v in ob.scale]}")
            if ob.rotation is not None:
                print(f"  Rotation (quat xyzw): {[round(float(v), 4) for v in ob.rotation]}")
            if ob.has_animation:
                print("  Found animation data for object")

    def print_meshes(self):
        for mesh in self.explorer.explore_meshes():
            print(f"Mesh name: {mesh.name}")
            print(f"Verts: {mesh.num_verts} polys: {mesh.num_polys} loops: {mesh.num_loops}")
            if mesh.object_name:
                print(f"  Object name: {mesh.object_name}")
            if mesh.armature_object_name:
                print(f"  Armature object name: {mesh.armature_object_name}")
            if mesh.vertices is not None:
                for i, co in enumerate(mesh.vertices):
                    print(f"  Vertex#{i} coord ({co[0]}, {co[1]}, {co[2]})")
            if mesh.edges is not None:
                print(f"  Edges: {len(mesh.edges)}")
            if mesh.polys is not None:
                print(f"  Polys: {len(mesh.polys)}")

    def print_armatures(self):
        for armature in self.explorer.explore_armatures():
            print(f"Armature: {armature.name}")
            if armature.object_name:
                print(f"Parent object name: {armature.object_name}")
            if armature.action_name:
                print(f"Action: {armature.action_name}")
            for bone in armature.bones:
                print(f"  Bone name: {bone.name} parent: {bone.parent_name or 'null'}")
            print(f"Number of bones in armature: {len(armature.bones)}")
            for chan in armature.pose_channels:
                print(f"  Found a bPoseChannel: {chan.name} (bone: {chan.bone_name})")

    def print_animation(self):
        summary = self.explorer.explore_animation()
        for name in summary.action_groups:
            print(f"Action group name: {name}")
        for key in summary.keyframes:
            print(f"Keyframe: {round(key.frame)}  {key.vec.ravel().tolist()}")
        print(f"FCurves: {summary.fcurves}")
        print(f"bActionGroups: {len(summary.action_groups)}")
        print(f"BezTriple: {len(summary.keyframes)}")


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Explore the contents of a .blend file")
    parser.add_argument("blend_file", help="Path to the .blend file")
    parser.add_argument("--scenes", action="store_true", help="Print scenes, collections and markers")
    parser.add_argument("--objects", action="store_true", help="Print objects and their transforms")
    parser.add_argument("--meshes", action="store_true", help="Print meshes and their elements")
    parser.add_argument("--armatures", action="store_true", help="Print armatures, bones and pose channels")
    parser.add_argument("--animation", action="store_true", help="Print fcurves, action groups and keyframes")
    parser.add_argument("--blocks", action="store_true", help="Print every non-DATA block descriptor")
    parser.add_argument("--struct", action="append", default=[], metavar="NAME",
                        help="Print the SDNA layout of a struct (repeatable)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print parser diagnostics to stderr")

    args = parser.parse_args(argv)
    if args.verbose:
        DebugConsole.enable()

    sections = [name for name in ("blocks", "scenes", "objects", "meshes", "armatures", "animation")
                if getattr(args, name)]
    if not sections and not args.struct:
        sections = None

    cli = BlendExplorerCLI(args.blend_file, sections, args.struct)
    try:
        cli.run()
    except FileNotFoundError:
        print("File not found!")
        return 1
    except (BlendFormatError, BlendStructuralError) as e:
        print(f"ERROR - {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

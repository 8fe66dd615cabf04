import gzip
import os
from dataclasses import dataclass, field
from typing import List, Optional, Set

import numpy as np
import pyrr

from blendlib.blend_graph import BlendFile
from blendlib.blend_parser import BlendCode, BlendHeader, BlendStructuralError, FileBlock
from blendlib.debug_stub import DebugConsole


# ==========================================================================
# 1. ENUMS and Helper Classes
# ==========================================================================
class ObjectType:
    Mesh = 1
    Armature = 25


MESH_ELEMENT_STRUCTS = (
    "MVert",
    "MEdge",
    "MLoop",
    "MPoly",
    "MLoopUV",
    "MLoopCol",
    "MDeformVert",
    "MDeformWeight",
)

GZIP_MAGIC = b"\x1f\x8b"


def normal_short_to_float(normals: np.ndarray) -> np.ndarray:
    return normals.astype(np.float32) * (1.0 / 32767.0)


# ==============================================================================
# 2. Summary Data Structures
# ==============================================================================
@dataclass
class TimeMarkerInfo:
    name: str
    frame: int


@dataclass
class CollectionInfo:
    name: str
    objects: List[str] = field(default_factory=list)
    children: List["CollectionInfo"] = field(default_factory=list)


@dataclass
class SceneInfo:
    name: str
    start_frame: Optional[int] = None
    end_frame: Optional[int] = None
    master_collection: Optional[CollectionInfo] = None
    markers: List[TimeMarkerInfo] = field(default_factory=list)


@dataclass
class ObjectInfo:
    name: str
    type: int
    data_name: Optional[str] = None
    location: Optional[pyrr.Vector3] = None
    scale: Optional[pyrr.Vector3] = None
    rotation: Optional[pyrr.Quaternion] = None
    has_animation: bool = False


@dataclass
class MeshInfo:
    name: str
    num_verts: int = 0
    num_polys: int = 0
    num_loops: int = 0
    object_name: Optional[str] = None
    armature_object_name: Optional[str] = None
    vertices: Optional[np.ndarray] = None  # (num_verts, 3) float32
    normals: Optional[np.ndarray] = None  # (num_verts, 3) float32
    edges: Optional[np.ndarray] = None  # (num_edges, 2) int32
    loops: Optional[np.ndarray] = None  # (num_loops, 2) vertex, edge
    polys: Optional[np.ndarray] = None  # (num_polys, 2) loopstart, totloop
    uvs: Optional[np.ndarray] = None  # (num_loops, 2) float32
    colors: Optional[np.ndarray] = None  # (num_loops, 4) uint8 r, g, b, a
    weights_per_vertex: Optional[np.ndarray] = None
    deform_weights: Optional[np.ndarray] = None  # (n, ) def_nr, weight records


@dataclass
class BoneInfo:
    name: str
    parent_name: Optional[str] = None
    arm_mat: Optional[pyrr.Matrix44] = None


@dataclass
class PoseChannelInfo:
    name: str
    bone_name: Optional[str] = None
    chan_mat: Optional[pyrr.Matrix44] = None


@dataclass
class ArmatureInfo:
    name: str
    object_name: Optional[str] = None
    action_name: Optional[str] = None
    bones: List[BoneInfo] = field(default_factory=list)
    pose_channels: List[PoseChannelInfo] = field(default_factory=list)


@dataclass
class KeyframeInfo:
    frame: float
    vec: np.ndarray  # (3, 3) handle, key, handle


@dataclass
class AnimationSummary:
    fcurves: int = 0
    fcurve_points: List[int] = field(default_factory=list)
    action_groups: List[str] = field(default_factory=list)
    keyframes: List[KeyframeInfo] = field(default_factory=list)


@dataclass
class BlendSummary:
    header: BlendHeader
    scenes: List[SceneInfo] = field(default_factory=list)
    objects: List[ObjectInfo] = field(default_factory=list)
    meshes: List[MeshInfo] = field(default_factory=list)
    armatures: List[ArmatureInfo] = field(default_factory=list)
    animation: Optional[AnimationSummary] = None


# ==============================================================================
# 3. Explorer
# ==============================================================================
class BlendExplorer:
    """Walks scenes, objects, meshes and armatures of a parsed blend file."""

    def __init__(self, blend: BlendFile):
        self.blend = blend

    def _has_field(self, struct_name, field_name):
        return self.blend.offset_of(struct_name, field_name) is not None

    def _name_at(self, address) -> Optional[str]:
        block = self.blend.find_block_by_address(address)
        return self.blend.id_name(block) if block is not None else None

    def _struct_name_or_none(self, block: FileBlock) -> Optional[str]:
        try:
            return self.blend.struct_name_of(block)
        except BlendStructuralError as e:
            DebugConsole.log(f"Skipping {self.blend.block_summary(block)}: {e}")
            return None

    def _matrix(self, block, struct_name, field_name) -> Optional[pyrr.Matrix44]:
        values = self.blend.read_field(block, struct_name, field_name)
        if values is None:
            return None
        return pyrr.Matrix44(np.asarray(values, dtype=np.float32).reshape(4, 4))

    # --- scenes and collections ---

    def explore_scenes(self) -> List[SceneInfo]:
        blend = self.blend
        scenes = []
        for scene_block in blend.blocks_by_code(BlendCode.Scene):
            scene = SceneInfo(name=blend.id_name(scene_block))

            sfra = blend.offset_of_path("Scene", "r.sfra")
            efra = blend.offset_of_path("Scene", "r.efra")
            if sfra is not None and efra is not None:
                scene.start_frame = blend.peek_int(scene_block, sfra)
                scene.end_frame = blend.peek_int(scene_block, efra)

            if self._has_field("Scene", "*master_collection"):
                address = blend.read_field(scene_block, "Scene", "*master_collection")
                collection_block = blend.find_block_by_address(address)
                if collection_block is not None:
                    scene.master_collection = self.explore_collection(collection_block)

            for child in scene_block.children:
                if self._struct_name_or_none(child) == "TimeMarker":
                    scene.markers.append(
                        TimeMarkerInfo(
                            name=blend.read_field(child, "TimeMarker", "name[64]"),
                            frame=blend.read_field(child, "TimeMarker", "frame"),
                        )
                    )

            DebugConsole.log(
                f"Scene '{scene.name}' frames {scene.start_frame}-{scene.end_frame}, "
                f"{len(scene.markers)} marker(s)"
            )
            scenes.append(scene)
        return scenes

    def explore_collection(self, collection_block: FileBlock, seen: Optional[Set[int]] = None) -> CollectionInfo:
        blend = self.blend
        seen = set() if seen is None else seen
        seen.add(collection_block.old_address)
        collection = CollectionInfo(name=blend.id_name(collection_block))

        first, _ = blend.read_list_base(collection_block, "Collection", "gobject")
        for member in blend.iter_linked_list(first, "CollectionObject"):
            object_name = self._name_at(blend.read_field(member, "CollectionObject", "*ob"))
            if object_name is not None:
                collection.objects.append(object_name)

        first, _ = blend.read_list_base(collection_block, "Collection", "children")
        for child in blend.iter_linked_list(first, "CollectionChild"):
            address = blend.read_field(child, "CollectionChild", "*collection")
            child_block = blend.find_block_by_address(address)
            if child_block is None or child_block.old_address in seen:
                continue
            collection.children.append(self.explore_collection(child_block, seen))
        return collection

    # --- objects ---

    def explore_objects(self) -> List[ObjectInfo]:
        blend = self.blend
        objects = []
        for ob in blend.blocks_by_code(BlendCode.Object):
            info = ObjectInfo(
                name=blend.id_name(ob),
                type=blend.read_field(ob, "Object", "type"),
                data_name=self._name_at(blend.read_field(ob, "Object", "*data")),
            )
            loc = blend.read_field(ob, "Object", "loc[3]")
            if loc is not None:
                info.location = pyrr.Vector3(loc)
            size = blend.read_field(ob, "Object", "size[3]")
            if size is not None:
                info.scale = pyrr.Vector3(size)
            quat = blend.read_field(ob, "Object", "quat[4]")
            if quat is not None:
                # stored w, x, y, z
                info.rotation = pyrr.Quaternion([quat[1], quat[2], quat[3], quat[0]])
            if self._has_field("Object", "*adt"):
                info.has_animation = blend.read_field(ob, "Object", "*adt") != 0
            objects.append(info)
        return objects

    # --- meshes ---

    def explore_meshes(self) -> List[MeshInfo]:
        blend = self.blend
        meshes = []
        for mesh_block in blend.blocks_by_code(BlendCode.Mesh):
            mesh = MeshInfo(name=blend.id_name(mesh_block))
            for attr, field_name in (
                ("num_verts", "totvert"),
                ("num_polys", "totpoly"),
                ("num_loops", "totloop"),
            ):
                value = blend.read_field(mesh_block, "Mesh", field_name)
                if value is not None:
                    setattr(mesh, attr, value)

            ob = blend.find_parent_object(mesh_block.old_address)
            if ob is not None:
                mesh.object_name = blend.id_name(ob)
                for child in ob.children:
                    if self._struct_name_or_none(child) == "ArmatureModifierData":
                        mesh.armature_object_name = self._name_at(
                            blend.read_field(child, "ArmatureModifierData", "*object")
                        )

            for child in mesh_block.children:
                struct_name = self._struct_name_or_none(child)
                if struct_name in MESH_ELEMENT_STRUCTS:
                    self._read_mesh_elements(mesh, struct_name, blend.read_struct_array(child))
            meshes.append(mesh)
        return meshes

    def _read_mesh_elements(self, mesh: MeshInfo, struct_name: str, records: np.ndarray):
        names = records.dtype.names or ()
        if struct_name == "MVert" and "co" in names:
            mesh.vertices = records["co"].astype(np.float32)
            if "no" in names:
                mesh.normals = normal_short_to_float(records["no"])
        elif struct_name == "MEdge" and {"v1", "v2"} <= set(names):
            mesh.edges = np.stack([records["v1"], records["v2"]], axis=1).astype(np.int32)
        elif struct_name == "MLoop" and {"v", "e"} <= set(names):
            mesh.loops = np.stack([records["v"], records["e"]], axis=1).astype(np.int32)
        elif struct_name == "MPoly" and {"loopstart", "totloop"} <= set(names):
            mesh.polys = np.stack([records["loopstart"], records["totloop"]], axis=1).astype(np.int32)
        elif struct_name == "MLoopUV" and "uv" in names:
            mesh.uvs = records["uv"].astype(np.float32)
        elif struct_name == "MLoopCol" and {"r", "g", "b", "a"} <= set(names):
            mesh.colors = np.stack([records[c] for c in "rgba"], axis=1).astype(np.uint8)
        elif struct_name == "MDeformVert" and "totweight" in names:
            mesh.weights_per_vertex = records["totweight"].astype(np.int32)
        elif struct_name == "MDeformWeight":
            mesh.deform_weights = records.copy()

    # --- armatures ---

    def explore_armatures(self) -> List[ArmatureInfo]:
        blend = self.blend
        armatures = []
        for armature_block in blend.blocks_by_code(BlendCode.Armature):
            armature = ArmatureInfo(name=blend.id_name(armature_block))

            for child in armature_block.children:
                if self._struct_name_or_none(child) == "Bone":
                    armature.bones.append(self.explore_bone(child))

            ob = blend.find_parent_object(armature_block.old_address)
            if ob is not None:
                armature.object_name = blend.id_name(ob)
                armature.action_name = self.action_name_of(ob)
                if self._has_field("Object", "*pose"):
                    pose = blend.find_block_by_address(blend.read_field(ob, "Object", "*pose"))
                    if pose is not None:
                        armature.pose_channels = self.explore_pose(pose)

            DebugConsole.log(
                f"Armature '{armature.name}': {len(armature.bones)} bone(s), "
                f"{len(armature.pose_channels)} pose channel(s)"
            )
            armatures.append(armature)
        return armatures

    def explore_bone(self, bone_block: FileBlock) -> BoneInfo:
        blend = self.blend
        bone = BoneInfo(name=blend.read_field(bone_block, "Bone", "name[64]"))
        parent = blend.find_block_by_address(blend.read_field(bone_block, "Bone", "*parent"))
        if parent is not None:
            bone.parent_name = blend.read_field(parent, "Bone", "name[64]")
        bone.arm_mat = self._matrix(bone_block, "Bone", "arm_mat[4][4]")
        return bone

    def explore_pose(self, pose_block: FileBlock) -> List[PoseChannelInfo]:
        blend = self.blend
        channels = []
        first, _ = blend.read_list_base(pose_block, "bPose", "chanbase")
        for chan in blend.iter_linked_list(first, "bPoseChannel"):
            info = PoseChannelInfo(name=blend.read_field(chan, "bPoseChannel", "name[64]"))
            bone = blend.find_block_by_address(blend.read_field(chan, "bPoseChannel", "*bone"))
            if bone is not None:
                info.bone_name = blend.read_field(bone, "Bone", "name[64]")
            info.chan_mat = self._matrix(chan, "bPoseChannel", "chan_mat[4][4]")
            channels.append(info)
        return channels

    def action_name_of(self, ob: FileBlock) -> Optional[str]:
        blend = self.blend
        if not self._has_field("Object", "*adt"):
            return None
        adt = blend.find_block_by_address(blend.read_field(ob, "Object", "*adt"))
        if adt is None or not self._has_field("AnimData", "*action"):
            return None
        return self._name_at(blend.read_field(adt, "AnimData", "*action"))

    # --- animation curves ---

    def explore_animation(self) -> AnimationSummary:
        blend = self.blend
        summary = AnimationSummary()
        for block in blend.blocks:
            if not block.is_data:
                continue
            struct_name = self._struct_name_or_none(block)
            if struct_name == "FCurve":
                summary.fcurves += 1
                totvert = blend.read_field(block, "FCurve", "totvert")
                if totvert is not None:
                    summary.fcurve_points.append(totvert)
            elif struct_name == "bActionGroup":
                summary.action_groups.append(blend.read_field(block, "bActionGroup", "name[64]"))
            elif struct_name == "BezTriple":
                records = blend.read_struct_array(block)
                if "vec" not in (records.dtype.names or ()):
                    continue
                for vec in records["vec"]:
                    summary.keyframes.append(KeyframeInfo(frame=float(vec[1][0]), vec=vec.copy()))
        return summary

    def explore(self) -> BlendSummary:
        return BlendSummary(
            header=self.blend.header,
            scenes=self.explore_scenes(),
            objects=self.explore_objects(),
            meshes=self.explore_meshes(),
            armatures=self.explore_armatures(),
            animation=self.explore_animation(),
        )


def load_blend(filepath, require_supported=True) -> BlendFile:
    """Reads a .blend file (plain or gzip compressed) fully into memory and parses it."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"File not found: {filepath}")
    with open(filepath, "rb") as f:
        data = f.read()
    if data[:2] == GZIP_MAGIC:
        DebugConsole.log(f"Decompressing gzip blend file: {os.path.basename(filepath)}")
        data = gzip.decompress(data)
    return BlendFile.from_bytes(data, require_supported=require_supported)


def extract_blend_summary(filepath) -> BlendSummary:
    return BlendExplorer(load_blend(filepath)).explore()

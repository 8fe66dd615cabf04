import re
import struct

import pytest

from blendlib.debug_stub import DebugConsole

PRIMITIVE_LENGTHS = {
    "char": 1,
    "uchar": 1,
    "short": 2,
    "ushort": 2,
    "int": 4,
    "float": 4,
    "double": 8,
    "int64_t": 8,
    "uint64_t": 8,
    "void": 0,
}
PRIMITIVE_FORMATS = {
    "char": "b",
    "uchar": "B",
    "short": "h",
    "ushort": "H",
    "int": "i",
    "float": "f",
    "double": "d",
    "int64_t": "q",
    "uint64_t": "Q",
}

IDENTITY = [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0], [0.0, 0.0, 1.0, 0.0], [0.0, 0.0, 0.0, 1.0]]


def _flatten(values):
    for value in values:
        if isinstance(value, (list, tuple)):
            yield from _flatten(value)
        else:
            yield value


def _pad4(buf):
    buf += b"\x00" * (-len(buf) & 3)


class BlendBuilder:
    """Builds 64-bit little-endian blend buffers in memory."""

    POINTER_SIZE = 8

    def __init__(self, header=b"BLENDER-v400"):
        self.header = header
        self.type_names = []
        self.type_lengths = {}
        self.structs = []
        self.blocks = []
        for name, length in PRIMITIVE_LENGTHS.items():
            self.add_type(name, length)

    # --- schema ---

    def add_type(self, name, length=0):
        if name not in self.type_lengths:
            self.type_names.append(name)
            self.type_lengths[name] = length
        elif length:
            self.type_lengths[name] = length
        return self.type_names.index(name)

    def field_size(self, type_name, field_name):
        if field_name.startswith(("*", "(*")):
            size = self.POINTER_SIZE
        else:
            size = self.type_lengths[type_name]
        for dim in re.findall(r"\[(\d+)\]", field_name):
            size *= int(dim)
        return size

    def add_struct(self, name, fields):
        for type_name, field_name in fields:
            if field_name.startswith(("*", "(*")):
                self.add_type(type_name)
            elif type_name not in self.type_lengths:
                raise KeyError(f"define '{type_name}' before embedding it in '{name}'")
        self.add_type(name, sum(self.field_size(t, f) for t, f in fields))
        self.structs.append((name, list(fields)))
        return len(self.structs) - 1

    def sdna_index(self, struct_name):
        return [name for name, _ in self.structs].index(struct_name)

    def layout(self, struct_name):
        fields = dict(self.structs)[struct_name]
        offsets = {}
        offset = 0
        for type_name, field_name in fields:
            offsets[field_name] = (type_name, offset)
            offset += self.field_size(type_name, field_name)
        return offsets

    def sdna_payload(self):
        names = []
        for _, fields in self.structs:
            for _, field_name in fields:
                if field_name not in names:
                    names.append(field_name)

        out = bytearray(b"SDNA")
        out += b"NAME" + struct.pack("<I", len(names))
        for name in names:
            out += name.encode("ascii") + b"\x00"
        _pad4(out)

        out += b"TYPE" + struct.pack("<I", len(self.type_names))
        for name in self.type_names:
            out += name.encode("ascii") + b"\x00"
        _pad4(out)

        out += b"TLEN"
        out += struct.pack(f"<{len(self.type_names)}H", *(self.type_lengths[n] for n in self.type_names))
        _pad4(out)

        out += b"STRC" + struct.pack("<I", len(self.structs))
        for name, fields in self.structs:
            out += struct.pack("<HH", self.type_names.index(name), len(fields))
            for type_name, field_name in fields:
                out += struct.pack("<HH", self.type_names.index(type_name), names.index(field_name))
        return bytes(out)

    # --- payloads ---

    def encode(self, type_name, field_name, value):
        if isinstance(value, bytes):
            return value
        if field_name.startswith("*"):
            return struct.pack("<Q", value)
        if type_name == "char" and isinstance(value, str):
            return value.encode("ascii") + b"\x00"
        fmt = PRIMITIVE_FORMATS[type_name]
        if isinstance(value, (list, tuple)):
            flat = list(_flatten(value))
            return struct.pack(f"<{len(flat)}{fmt}", *flat)
        return struct.pack("<" + fmt, value)

    def _place(self, buf, struct_name, path, value, base=0):
        head, _, rest = path.partition(".")
        type_name, offset = self.layout(struct_name)[head]
        if rest:
            self._place(buf, type_name, rest, value, base + offset)
            return
        data = self.encode(type_name, head, value)
        buf[base + offset:base + offset + len(data)] = data

    def payload(self, struct_name, values=None):
        buf = bytearray(self.type_lengths[struct_name])
        for path, value in (values or {}).items():
            self._place(buf, struct_name, path, value)
        return bytes(buf)

    # --- blocks ---

    def add_block(self, code, payload=b"", address=0, struct_name=None, count=1, sdna_index=None):
        if isinstance(code, str):
            code = code.encode("ascii")
        code = code.ljust(4, b"\x00")
        if sdna_index is None:
            sdna_index = self.sdna_index(struct_name) if struct_name else 0
        self.blocks.append((code, payload, address, sdna_index, count))

    def add_struct_block(self, code, struct_name, address, values=None):
        self.add_block(code, self.payload(struct_name, values), address, struct_name)

    def build(self, with_sdna=True, sdna_first=False, with_endb=True):
        blocks = list(self.blocks)
        if with_sdna:
            dna = (b"DNA1", self.sdna_payload(), 0, 0, 1)
            if sdna_first:
                blocks.insert(0, dna)
            else:
                blocks.append(dna)
        if with_endb:
            blocks.append((b"ENDB", b"", 0, 0, 0))

        out = bytearray(self.header)
        for code, payload, address, sdna_index, count in blocks:
            out += struct.pack("<4sIQII", code, len(payload), address, sdna_index, count)
            out += payload
            _pad4(out)
        return bytes(out)


# Addresses used by the scene fixture
ADDR = {
    "scene": 0x1000,
    "marker": 0x1050,
    "master": 0x1100,
    "cob1": 0x1300,
    "cob2": 0x1310,
    "cchild": 0x1400,
    "props": 0x1200,
    "cob3": 0x1500,
    "ob_mesh": 0x2000,
    "armmod": 0x2050,
    "ob_arm": 0x2100,
    "pose": 0x5000,
    "chan1": 0x5100,
    "chan2": 0x5200,
    "adt": 0x6000,
    "mesh": 0x3000,
    "mverts": 0x3100,
    "medges": 0x3200,
    "mloopcols": 0x3300,
    "arm": 0x4000,
    "bone_root": 0x4100,
    "bone_tip": 0x4200,
    "action": 0x6100,
    "fcurve": 0x6200,
    "agrp": 0x6300,
    "bez": 0x6400,
}


def define_scene_schema(builder):
    b = builder
    b.add_struct("ID", [("void", "*next"), ("void", "*prev"), ("char", "name[66]")])
    b.add_struct("ListBase", [("void", "*first"), ("void", "*last")])
    b.add_struct("RenderData", [("int", "sfra"), ("int", "efra")])
    b.add_struct("Scene", [("ID", "id"), ("RenderData", "r"), ("Collection", "*master_collection")])
    b.add_struct("TimeMarker", [("TimeMarker", "*next"), ("TimeMarker", "*prev"), ("int", "frame"), ("char", "name[64]")])
    b.add_struct("Collection", [("ID", "id"), ("ListBase", "gobject"), ("ListBase", "children")])
    b.add_struct("CollectionObject", [("CollectionObject", "*next"), ("CollectionObject", "*prev"), ("Object", "*ob")])
    b.add_struct("CollectionChild", [("CollectionChild", "*next"), ("CollectionChild", "*prev"), ("Collection", "*collection")])
    b.add_struct("Object", [
        ("ID", "id"),
        ("void", "*data"),
        ("short", "type"),
        ("float", "loc[3]"),
        ("float", "size[3]"),
        ("float", "quat[4]"),
        ("AnimData", "*adt"),
        ("bPose", "*pose"),
    ])
    b.add_struct("ArmatureModifierData", [("Object", "*object")])
    b.add_struct("Mesh", [("ID", "id"), ("int", "totvert"), ("int", "totpoly"), ("int", "totloop")])
    b.add_struct("MVert", [("float", "co[3]"), ("short", "no[3]"), ("char", "flag"), ("char", "bweight")])
    b.add_struct("MEdge", [("int", "v1"), ("int", "v2"), ("char", "crease"), ("char", "bweight"), ("short", "flag")])
    b.add_struct("bArmature", [("ID", "id"), ("ListBase", "bonebase")])
    b.add_struct("Bone", [("Bone", "*next"), ("Bone", "*prev"), ("Bone", "*parent"), ("char", "name[64]"), ("float", "arm_mat[4][4]")])
    b.add_struct("bPose", [("ListBase", "chanbase")])
    b.add_struct("bPoseChannel", [
        ("bPoseChannel", "*next"),
        ("bPoseChannel", "*prev"),
        ("char", "name[64]"),
        ("Bone", "*bone"),
        ("float", "chan_mat[4][4]"),
    ])
    b.add_struct("bAction", [("ID", "id")])
    b.add_struct("AnimData", [("bAction", "*action")])
    b.add_struct("FCurve", [("FCurve", "*next"), ("FCurve", "*prev"), ("int", "totvert")])
    b.add_struct("bActionGroup", [("bActionGroup", "*next"), ("bActionGroup", "*prev"), ("char", "name[64]")])
    b.add_struct("BezTriple", [("float", "vec[3][3]"), ("char", "ipo"), ("char", "_pad[3]")])
    b.add_struct("MLoopCol", [("uchar", "r"), ("uchar", "g"), ("uchar", "b"), ("uchar", "a")])


def build_scene_file(builder=None, **build_kwargs):
    b = builder or BlendBuilder()
    define_scene_schema(b)
    a = ADDR

    b.add_struct_block("SC", "Scene", a["scene"], {
        "id.name[66]": "SCMain",
        "r.sfra": 1,
        "r.efra": 250,
        "*master_collection": a["master"],
    })
    b.add_struct_block("DATA", "TimeMarker", a["marker"], {"frame": 20, "name[64]": "run"})
    b.add_struct_block("DATA", "Collection", a["master"], {
        "id.name[66]": "GRScene Collection",
        "gobject.*first": a["cob1"],
        "gobject.*last": a["cob2"],
        "children.*first": a["cchild"],
        "children.*last": a["cchild"],
    })
    b.add_struct_block("DATA", "CollectionObject", a["cob1"], {"*next": a["cob2"], "*ob": a["ob_mesh"]})
    b.add_struct_block("DATA", "CollectionObject", a["cob2"], {"*prev": a["cob1"], "*ob": a["ob_arm"]})
    b.add_struct_block("DATA", "CollectionChild", a["cchild"], {"*collection": a["props"]})

    b.add_struct_block("GR", "Collection", a["props"], {
        "id.name[66]": "GRProps",
        "gobject.*first": a["cob3"],
        "gobject.*last": a["cob3"],
    })
    b.add_struct_block("DATA", "CollectionObject", a["cob3"], {"*ob": a["ob_mesh"]})

    b.add_struct_block("OB", "Object", a["ob_mesh"], {
        "id.name[66]": "OBCube",
        "*data": a["mesh"],
        "type": 1,
        "loc[3]": [1.0, 2.0, 3.0],
        "size[3]": [1.0, 1.0, 1.0],
        "quat[4]": [1.0, 0.0, 0.0, 0.0],
    })
    b.add_struct_block("DATA", "ArmatureModifierData", a["armmod"], {"*object": a["ob_arm"]})

    b.add_struct_block("OB", "Object", a["ob_arm"], {
        "id.name[66]": "OBRig",
        "*data": a["arm"],
        "type": 25,
        "loc[3]": [0.0, 0.0, 0.5],
        "size[3]": [2.0, 2.0, 2.0],
        "quat[4]": [0.5, 0.5, 0.5, 0.5],
        "*adt": a["adt"],
        "*pose": a["pose"],
    })
    b.add_struct_block("DATA", "bPose", a["pose"], {
        "chanbase.*first": a["chan1"],
        "chanbase.*last": a["chan2"],
    })
    b.add_struct_block("DATA", "bPoseChannel", a["chan1"], {
        "*next": a["chan2"],
        "name[64]": "root",
        "*bone": a["bone_root"],
        "chan_mat[4][4]": IDENTITY,
    })
    b.add_struct_block("DATA", "bPoseChannel", a["chan2"], {
        "*prev": a["chan1"],
        "name[64]": "tip",
        "*bone": a["bone_tip"],
        "chan_mat[4][4]": IDENTITY,
    })
    b.add_struct_block("DATA", "AnimData", a["adt"], {"*action": a["action"]})

    b.add_struct_block("ME", "Mesh", a["mesh"], {
        "id.name[66]": "MECube",
        "totvert": 3,
        "totpoly": 1,
        "totloop": 3,
    })
    verts = b"".join(
        b.payload("MVert", {"co[3]": co, "no[3]": [0, 0, 32767]})
        for co in ([0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0])
    )
    b.add_block("DATA", verts, a["mverts"], "MVert", count=3)
    edges = b"".join(b.payload("MEdge", {"v1": v1, "v2": v2}) for v1, v2 in ((0, 1), (1, 2)))
    b.add_block("DATA", edges, a["medges"], "MEdge", count=2)
    colors = b"".join(
        b.payload("MLoopCol", {"r": r, "g": g, "b": bl, "a": 255})
        for r, g, bl in ((255, 0, 0), (0, 255, 0), (0, 0, 255))
    )
    b.add_block("DATA", colors, a["mloopcols"], "MLoopCol", count=3)

    b.add_struct_block("AR", "bArmature", a["arm"], {
        "id.name[66]": "ARRig",
        "bonebase.*first": a["bone_root"],
        "bonebase.*last": a["bone_tip"],
    })
    b.add_struct_block("DATA", "Bone", a["bone_root"], {
        "*next": a["bone_tip"],
        "name[64]": "root",
        "arm_mat[4][4]": IDENTITY,
    })
    b.add_struct_block("DATA", "Bone", a["bone_tip"], {
        "*prev": a["bone_root"],
        "*parent": a["bone_root"],
        "name[64]": "tip",
        "arm_mat[4][4]": [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0], [0.0, 0.0, 1.0, 0.0], [0.0, 1.0, 0.0, 1.0]],
    })

    b.add_struct_block("AC", "bAction", a["action"], {"id.name[66]": "ACRun"})
    b.add_struct_block("DATA", "FCurve", a["fcurve"], {"totvert": 2})
    b.add_struct_block("DATA", "bActionGroup", a["agrp"], {"name[64]": "root"})
    bez = b"".join(
        b.payload("BezTriple", {"vec[3][3]": [[frame - 1.0, 0.0, 0.0], [frame, 1.0, 0.0], [frame + 1.0, 0.0, 0.0]]})
        for frame in (1.0, 20.0)
    )
    b.add_block("DATA", bez, a["bez"], "BezTriple", count=2)

    return b.build(**build_kwargs)


@pytest.fixture
def builder():
    return BlendBuilder()


@pytest.fixture
def scene_bytes():
    return build_scene_file()


@pytest.fixture(autouse=True)
def quiet_console():
    yield
    DebugConsole.disable()

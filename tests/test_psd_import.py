"""
Tests for the layered-scene importer.

Layer trees are small fakes exposing the psd-tools layer attributes (kind,
bbox, opacity, blend_mode, mask, topil). Smart objects are real psd-tools
SmartObjects read from tagged blocks, and one suite saves an actual PSD.
"""

import io
import os
import sys
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

import numpy as np
from PIL import Image
from psd_tools import PSDImage
from psd_tools.api.layers import Group, PixelLayer
from psd_tools.api.smart_object import SmartObject
from psd_tools.constants import BlendMode as PsdBlendMode
from psd_tools.constants import LinkedLayerType, Tag
from psd_tools.psd.descriptor import Descriptor, DescriptorBlock, Double, List, String
from psd_tools.psd.linked_layer import LinkedLayer, LinkedLayers
from psd_tools.psd.tagged_blocks import PlacedLayerData, SmartObjectLayerData

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from mockup_engine.compositor import SANDWICH, MockupRenderer, RenderOptions  # type: ignore
from mockup_engine.geometry import Point2D, Size  # type: ignore
from mockup_engine.layers import (  # type: ignore
    AdjustmentLayer,
    BlendMode,
    GroupLayer,
    RasterImageLayer,
    ShapeLayer,
    SmartObjectLayer,
    SolidColorLayer,
)
from mockup_engine.psd_import import (  # type: ignore
    COMPOSITE_KEY,
    ParseOptions,
    SceneImporter,
    find_render_layers,
    is_layered_scene_file,
    parse_layered_scene,
    parse_layered_scene_file,
    psd_blend_mode,
)


class FakeEnum:
    def __init__(self, name):
        self.name = name


class FakeMask:
    def __init__(self, bbox, background_color=0, size=None):
        self.bbox = bbox
        self.background_color = background_color
        width, height = size or (bbox[2] - bbox[0], bbox[3] - bbox[1])
        self._image = Image.new("L", (width, height), 255)

    def topil(self):
        return self._image


class FakeBlocks:
    """Tagged-block lookup as psd-tools layers and documents expose it."""

    def __init__(self, blocks=None):
        self._blocks = blocks or {}

    def get_data(self, key):
        return self._blocks.get(key)


class FakeHost:
    """Enough of a psd-tools layer for SmartObject to read its blocks."""

    def __init__(self, blocks, document_blocks):
        self.tagged_blocks = FakeBlocks(blocks)
        self._psd = SimpleNamespace(tagged_blocks=FakeBlocks(document_blocks))


def placed_descriptor(non_affine=None, affine=None, size=None, uuid="so-1"):
    descriptor = DescriptorBlock()
    descriptor[b"Idnt"] = String(uuid)
    if non_affine is not None:
        descriptor[b"nonAffineTransform"] = List([Double(float(v)) for v in non_affine])
    if affine is not None:
        descriptor[b"Trnf"] = List([Double(float(v)) for v in affine])
    if size is not None:
        extent = Descriptor()
        extent[b"Wdth"] = Double(float(size[0]))
        extent[b"Hght"] = Double(float(size[1]))
        descriptor[b"Sz  "] = extent
    return descriptor


def smart_object(descriptor=None, link=LinkedLayerType.DATA, transform_box=None):
    """A real psd-tools SmartObject; ``link=None`` leaves its data unresolved."""
    descriptor = descriptor if descriptor is not None else placed_descriptor()
    blocks = {Tag.SMART_OBJECT_LAYER_DATA1: SmartObjectLayerData(data=descriptor)}
    if transform_box is not None:
        blocks[Tag.PLACED_LAYER1] = PlacedLayerData(transform=tuple(float(v) for v in transform_box))
    document_blocks = {}
    if link is not None:
        key = Tag.LINKED_LAYER_EXTERNAL if link is LinkedLayerType.EXTERNAL else Tag.LINKED_LAYER1
        uuid = descriptor.get(b"Idnt").value
        document_blocks[key] = LinkedLayers([LinkedLayer(kind=link, uuid=uuid)])
    return SmartObject(FakeHost(blocks, document_blocks))


class FakeLayer:
    def __init__(self, name, kind="pixel", bbox=(0, 0, 10, 10), children=(), opacity=255,
                 blend_mode="NORMAL", visible=True, mask=None, smart_object=None, data=None,
                 color=(255, 0, 0, 255), clipping=False):
        self.name = name
        self.kind = kind
        self.bbox = bbox
        self.opacity = opacity
        self.blend_mode = FakeEnum(blend_mode)
        self.visible = visible
        self.mask = mask
        self.smart_object = smart_object
        self.data = data
        self.clipping_layer = clipping
        self._children = list(children)
        self._color = color

    def __iter__(self):
        return iter(self._children)

    def has_mask(self):
        return self.mask is not None

    def topil(self):
        if self.kind in ("group", "brightnesscontrast"):
            return None
        width, height = self.bbox[2] - self.bbox[0], self.bbox[3] - self.bbox[1]
        return Image.new("RGBA", (width, height), self._color)


class FakePSD:
    def __init__(self, width, height, layers):
        self.width = width
        self.height = height
        self._layers = list(layers)

    def __iter__(self):
        return iter(self._layers)

    def composite(self):
        return Image.new("RGBA", (self.width, self.height), (0, 0, 255, 255))


def smart(name, bbox=(10, 10, 60, 40), **kwargs):
    return FakeLayer(name, kind="smartobject", bbox=bbox, smart_object=smart_object(**kwargs))


def build(layers, width=100, height=80, options=None, config=None):
    return SceneImporter(config).build(FakePSD(width, height, layers), options or ParseOptions(name="Test"))


class TestLayerTree(unittest.TestCase):
    """Classification, z-indices and ids."""

    def setUp(self):
        self.result = build([
            FakeLayer("Background", bbox=(0, 0, 100, 80)),
            FakeLayer("Device", kind="group", bbox=(0, 0, 100, 80), children=[
                smart("Screen"),
                FakeLayer("Glare", kind="shape", opacity=128, blend_mode="SCREEN"),
            ]),
            FakeLayer("Fill", kind="solidcolorfill", data={b"Clr ": {b"Rd  ": 10.0, b"Grn ": 20.0, b"Bl  ": 30.0}}),
            FakeLayer("Levels", kind="brightnesscontrast"),
            FakeLayer("Caption", kind="type"),
        ])
        self.template = self.result.template

    def test_success(self):
        self.assertTrue(self.result.success)
        self.assertEqual(self.template.canvas_size, Size(100, 80))
        self.assertEqual(self.template.name, "Test")

    def test_kinds(self):
        kinds = [type(layer) for layer in self.template.layers]
        self.assertEqual(
            kinds,
            [RasterImageLayer, GroupLayer, SolidColorLayer, AdjustmentLayer, RasterImageLayer],
        )
        group = self.template.layers[1]
        self.assertIsInstance(group.children[0], SmartObjectLayer)
        self.assertIsInstance(group.children[1], ShapeLayer)

    def test_z_indices_and_ids(self):
        layers = self.template.layers
        self.assertEqual([layer.z_index for layer in layers], [0, 1, 2, 3, 4])
        self.assertEqual([child.z_index for child in layers[1].children], [100, 101])
        self.assertEqual(layers[0].id, "layer-0-Background")
        self.assertEqual(layers[1].children[0].id, "layer-100-Screen")

    def test_properties(self):
        glare = self.template.layers[1].children[1]
        self.assertAlmostEqual(glare.opacity, 128 / 255)
        self.assertIs(glare.blend_mode, BlendMode.SCREEN)
        self.assertEqual(self.template.layers[2].color, (10, 20, 30, 255))
        self.assertEqual(self.template.layers[3].adjustment, "brightnesscontrast")

    def test_snapshots(self):
        snapshots = self.result.raster_snapshots
        background = snapshots["layer-0-Background"]
        self.assertEqual(background.shape, (80, 100, 4))
        self.assertEqual(tuple(background[0, 0]), (0, 0, 255, 255))
        self.assertFalse(background.flags.writeable)
        self.assertIn(COMPOSITE_KEY, snapshots)
        self.assertNotIn("layer-1-Device", snapshots)
        self.assertNotIn("layer-3-Levels", snapshots)

    def test_insert_areas(self):
        self.assertEqual(len(self.template.insert_areas), 1)
        area = self.template.insert_areas[0]
        self.assertEqual(area.id, "layer-100-Screen")
        self.assertIsNone(area.perspective_quad)
        self.assertEqual(area.placed_size, Size(50, 30))
        self.assertEqual(area.placed_kind, "embedded")

    def test_duplicate_names_get_unique_ids(self):
        # Root 0 and its first child both get z-index 0
        result = build([FakeLayer("Twin", kind="group", children=[FakeLayer("Twin")])])
        ids = [layer.id for layer in result.template.iter_layers()]
        self.assertEqual(ids, ["layer-0-Twin", "layer-0-Twin-2"])

    def test_spaces_become_dashes(self):
        result = build([FakeLayer("My  Big Layer")])
        self.assertEqual(result.template.layers[0].id, "layer-0-My--Big-Layer")


class TestSmartObjects(unittest.TestCase):
    """Perspective quad, placed size and placed kind."""

    def area(self, layer):
        return build([layer]).template.insert_areas[0]

    def test_non_affine_transform_preferred(self):
        descriptor = placed_descriptor(
            non_affine=[12, 14, 80, 10, 90, 70, 5, 60],
            affine=[0, 0, 1, 0, 1, 1, 0, 1],
            size=(1200, 800),
        )
        area = self.area(smart("Poster", descriptor=descriptor))
        self.assertEqual(area.perspective_quad.top_left, Point2D(12, 14))
        self.assertEqual(area.perspective_quad.bottom_left, Point2D(5, 60))
        self.assertEqual(area.placed_size, Size(1200.0, 800.0))

    def test_affine_transform_fallback(self):
        area = self.area(smart("Poster", descriptor=placed_descriptor(affine=[1, 2, 3, 4, 5, 6, 7, 8])))
        self.assertEqual(area.perspective_quad.bottom_right, Point2D(5, 6))

    def test_transform_box_fallback(self):
        area = self.area(smart("Poster", transform_box=(0, 0, 40, 0, 40, 30, 0, 30)))
        self.assertEqual(area.perspective_quad.top_right, Point2D(40, 0))

    def test_short_transform_leaves_quad_unset(self):
        area = self.area(smart("Poster", descriptor=placed_descriptor(affine=[1, 2, 3, 4])))
        self.assertIsNone(area.perspective_quad)

    def test_embedded(self):
        self.assertEqual(self.area(smart("Poster")).placed_kind, "embedded")

    def test_linked(self):
        self.assertEqual(self.area(smart("Poster", link=LinkedLayerType.EXTERNAL)).placed_kind, "linked")

    def test_descriptor_read_through_layer_data(self):
        so = smart_object(placed_descriptor(size=(640, 480)))
        self.assertIsInstance(so._config, SmartObjectLayerData)
        area = self.area(FakeLayer("Poster", kind="smartobject", bbox=(0, 0, 64, 48), smart_object=so))
        self.assertEqual(area.placed_size, Size(640.0, 480.0))

    def test_missing_linked_data_is_a_warning(self):
        layer = smart("Poster", descriptor=placed_descriptor(affine=[1, 2, 3, 4, 5, 6, 7, 8]), link=None)
        with self.assertRaises(ValueError):
            layer.smart_object.kind
        result = build([layer])
        self.assertTrue(result.success)
        area = result.template.insert_areas[0]
        self.assertEqual(area.placed_kind, "embedded")
        self.assertEqual(area.perspective_quad.bottom_right, Point2D(5, 6))
        self.assertTrue(any("Smart object data unreadable" in warning for warning in result.warnings))


class TestMaskInheritance(unittest.TestCase):
    """A group's mask flows down to smart objects without their own."""

    def test_nested_smart_object_inherits_group_mask(self):
        result = build([
            FakeLayer("Frame", kind="group", mask=FakeMask((5, 5, 95, 75), 0), children=[
                FakeLayer("Inner", kind="group", children=[smart("Screen")]),
            ]),
        ])
        group = result.template.layers[0]
        area = result.template.insert_areas[0]
        self.assertIsNotNone(area.mask)
        self.assertEqual(area.mask.mask_image_ref, f"{group.id}_mask")
        self.assertEqual(area.mask.bounds, group.mask.bounds)
        self.assertIn(area.mask.mask_image_ref, result.raster_snapshots)
        self.assertEqual(result.raster_snapshots[area.mask.mask_image_ref].shape, (70, 90))

    def test_innermost_group_mask_wins(self):
        result = build([
            FakeLayer("Outer", kind="group", mask=FakeMask((0, 0, 100, 80)), children=[
                FakeLayer("Inner", kind="group", mask=FakeMask((10, 10, 50, 50)), children=[smart("Screen")]),
            ]),
        ])
        inner = result.template.layers[0].children[0]
        self.assertEqual(result.template.insert_areas[0].mask.mask_image_ref, f"{inner.id}_mask")

    def test_own_mask_is_kept(self):
        layer = smart("Screen")
        layer.mask = FakeMask((20, 20, 30, 30), 255)
        result = build([FakeLayer("Frame", kind="group", mask=FakeMask((0, 0, 100, 80)), children=[layer])])
        area = result.template.insert_areas[0]
        self.assertEqual(area.mask.mask_image_ref, f"{area.id}_mask")
        self.assertEqual(area.mask.default_color, 255)

    def test_tree_layer_keeps_its_own_mask_only(self):
        result = build([FakeLayer("Frame", kind="group", mask=FakeMask((0, 0, 100, 80)), children=[smart("Screen")])])
        self.assertIsNone(result.template.layers[0].children[0].mask)


class TestRenderLayerHints(unittest.TestCase):

    def test_first_match_per_role(self):
        result = build([
            FakeLayer("BG"),
            FakeLayer("base copy"),
            smart("Screen"),
            FakeLayer("Hands", kind="group", children=[FakeLayer("shadow")]),
        ])
        hint = result.template.render_layers
        self.assertEqual(hint.base_layer_id, "layer-0-BG")
        self.assertEqual(hint.overlay_layer_id, "layer-3-Hands")

    def test_whole_words_only(self):
        result = build([FakeLayer("Backgrounds"), FakeLayer("Highlight"), smart("Screen")])
        self.assertIsNone(result.template.render_layers)

    def test_partial_hint(self):
        result = build([FakeLayer("Fundo"), smart("Screen")])
        hint = result.template.render_layers
        self.assertEqual(hint.base_layer_id, "layer-0-Fundo")
        self.assertIsNone(hint.overlay_layer_id)

    def test_empty_tree(self):
        self.assertIsNone(find_render_layers(()))


class TestImportBehaviour(unittest.TestCase):

    def test_no_smart_objects_is_a_warning(self):
        result = build([FakeLayer("Background")])
        self.assertTrue(result.success)
        self.assertEqual(result.template.insert_areas, ())
        self.assertTrue(any("smart objects" in warning for warning in result.warnings))

    def test_zero_canvas_is_fatal(self):
        result = build([FakeLayer("Background")], width=0, height=80)
        self.assertFalse(result.success)
        self.assertIsNone(result.template)
        self.assertTrue(result.errors)

    def test_unreadable_bytes(self):
        result = parse_layered_scene(b"this is not a photoshop file")
        self.assertFalse(result.success)
        self.assertTrue(result.errors)

    def test_snapshots_disabled(self):
        result = build([FakeLayer("Frame", kind="group", mask=FakeMask((0, 0, 10, 10)), children=[smart("S")])],
                       options=ParseOptions(extract_raster_snapshots=False))
        self.assertIsNone(result.raster_snapshots)
        self.assertEqual(result.template.insert_areas[0].mask.mask_image_ref, "layer-0-Frame_mask")

    def test_composite_can_be_disabled(self):
        result = build([FakeLayer("Background")], config={"include_composite": False})
        self.assertNotIn(COMPOSITE_KEY, result.raster_snapshots)

    def test_options_metadata(self):
        options = ParseOptions(name="Box", description="A box", category="packaging", tags=("box",))
        template = build([smart("Lid")], options=options).template
        self.assertEqual(template.category, "packaging")
        self.assertEqual(template.tags, ("box",))
        self.assertEqual(template.metadata["version"], 1)
        self.assertTrue(template.id.startswith("mockup-"))

    def test_unreadable_layer_pixels_warn(self):
        layer = FakeLayer("Broken")

        def explode():
            raise ValueError("bad channel data")

        layer.topil = explode
        result = build([layer, smart("Screen")])
        self.assertTrue(result.success)
        self.assertNotIn("layer-0-Broken", result.raster_snapshots)
        self.assertTrue(any("bad channel data" in warning for warning in result.warnings))


class TestBlendModes(unittest.TestCase):

    def test_mapping(self):
        self.assertIs(psd_blend_mode(FakeEnum("MULTIPLY")), BlendMode.MULTIPLY)
        self.assertIs(psd_blend_mode(FakeEnum("LINEAR_DODGE")), BlendMode.LINEAR_DODGE)
        self.assertIs(psd_blend_mode(FakeEnum("PIN_LIGHT")), BlendMode.PIN_LIGHT)
        self.assertIs(psd_blend_mode(FakeEnum("DARKER_COLOR")), BlendMode.DARKER_COLOR)
        self.assertIs(psd_blend_mode(FakeEnum("SUBTRACT")), BlendMode.SUBTRACT)
        self.assertIs(psd_blend_mode(FakeEnum("PASS_THROUGH")), BlendMode.NORMAL)
        self.assertIs(psd_blend_mode(FakeEnum("DISSOLVE")), BlendMode.NORMAL)
        self.assertIs(psd_blend_mode(FakeEnum("SOFT_LIGHT")), BlendMode.SOFT_LIGHT)
        self.assertIs(psd_blend_mode("luminosity"), BlendMode.LUMINOSITY)
        self.assertIs(psd_blend_mode(None), BlendMode.NORMAL)

    def test_every_psd_mode_is_kept(self):
        for mode in PsdBlendMode:
            if mode.name in ("NORMAL", "PASS_THROUGH", "DISSOLVE"):
                continue
            self.assertEqual(psd_blend_mode(mode).name, mode.name)


class TestSavedDocuments(unittest.TestCase):
    """A PSD written by psd-tools, imported and rendered."""

    def setUp(self):
        psd = PSDImage.new("RGBA", (64, 48))
        PixelLayer.frompil(Image.new("RGBA", (64, 48), (200, 100, 50, 255)), psd, "Background")
        group = Group.new(psd, "Device")
        PixelLayer.frompil(Image.new("RGBA", (20, 16), (0, 255, 0, 255)), group, "Hands", top=10, left=30)
        buffer = io.BytesIO()
        psd.save(buffer)
        self.result = parse_layered_scene(buffer.getvalue(), ParseOptions(name="Saved"))

    def test_layers(self):
        self.assertTrue(self.result.success, self.result.errors)
        template = self.result.template
        self.assertEqual(template.canvas_size, Size(64, 48))
        self.assertEqual([type(layer) for layer in template.layers], [RasterImageLayer, GroupLayer])
        hands = template.layers[1].children[0]
        self.assertEqual(hands.name, "Hands")
        self.assertEqual((hands.bounds.left, hands.bounds.top), (30, 10))

    def test_snapshots_are_bgra(self):
        background = self.result.raster_snapshots["layer-0-Background"]
        self.assertEqual(background.shape, (48, 64, 4))
        np.testing.assert_array_equal(background[0, 0], (50, 100, 200, 255))

    def test_renders_through_sandwich(self):
        template = self.result.template
        hint = template.render_layers
        self.assertEqual(hint.base_layer_id, "layer-0-Background")
        self.assertEqual(hint.overlay_layer_id, template.layers[1].children[0].id)

        rendered = MockupRenderer().render(
            template, [], self.result.raster_snapshots, RenderOptions(return_surface_handle=True)
        )
        self.assertTrue(rendered.success)
        self.assertEqual(rendered.strategy, SANDWICH)
        self.assertEqual(rendered.surface.pixel(5, 5), (50, 100, 200, 255))
        self.assertEqual(rendered.surface.pixel(40, 18), (0, 255, 0, 255))


class TestFiles(unittest.TestCase):

    def test_is_layered_scene_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            psd = Path(tmp) / "scene.PSD"
            psd.write_bytes(b"")
            signed = Path(tmp) / "scene.bin"
            signed.write_bytes(b"8BPS\x00\x01")
            other = Path(tmp) / "photo.png"
            other.write_bytes(b"\x89PNG")
            self.assertTrue(is_layered_scene_file(psd))
            self.assertTrue(is_layered_scene_file(signed))
            self.assertFalse(is_layered_scene_file(other))
            self.assertFalse(is_layered_scene_file(Path(tmp) / "missing.bin"))

    def test_parse_missing_file(self):
        result = parse_layered_scene_file("/nonexistent/scene.psd")
        self.assertFalse(result.success)


if __name__ == "__main__":
    unittest.main()

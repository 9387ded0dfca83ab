"""Hierarchical greedy point clustering for map pins.

Same scheme as mapbox supercluster: points are projected to unit Web-Mercator space and
merged zoom by zoom from `max_zoom` down to `min_zoom`. Cluster ids encode the level and
position they were built from, so they are stable for the same ordered point set.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from pinmeet.livesync.models import MAX_ZOOM, Pin, Viewport

BBox = Tuple[float, float, float, float]


def lng_x(lon: float) -> float:
	return lon / 360.0 + 0.5


def lat_y(lat: float) -> float:
	sin = math.sin(lat * math.pi / 180.0)
	if sin >= 1.0:
		return 0.0
	if sin <= -1.0:
		return 1.0
	y = 0.5 - 0.25 * math.log((1 + sin) / (1 - sin)) / math.pi
	return 0.0 if y < 0 else 1.0 if y > 1 else y


def x_lng(x: float) -> float:
	return (x - 0.5) * 360.0


def y_lat(y: float) -> float:
	y2 = (180.0 - y * 360.0) * math.pi / 180.0
	return 360.0 * math.atan(math.exp(y2)) / math.pi - 90.0


@dataclass(slots=True)
class _Node:
	x: float
	y: float
	index: int
	num_points: int = 1
	zoom: float = math.inf
	parent_id: int = -1
	is_cluster: bool = False


@dataclass(slots=True)
class ClusterNode:
	"""Renderable item: a single pin or a cluster of `count` pins."""

	lat: float
	lon: float
	count: int
	cluster_id: Optional[int] = None
	pin: Optional[Pin] = None

	@property
	def is_cluster(self) -> bool:
		return self.cluster_id is not None

	@property
	def key(self) -> str:
		return f"cluster:{self.cluster_id}" if self.cluster_id is not None else f"pin:{self.pin.id}"  # type: ignore[union-attr]


class _Level:
	"""Uniform grid over one zoom level's nodes."""

	def __init__(self, nodes: List[_Node], cell: float) -> None:
		self.nodes = nodes
		self._cell = cell
		self._grid: Dict[Tuple[int, int], List[int]] = defaultdict(list)
		for i, node in enumerate(nodes):
			self._grid[self._key(node.x, node.y)].append(i)

	def _key(self, x: float, y: float) -> Tuple[int, int]:
		return (math.floor(x / self._cell), math.floor(y / self._cell))

	def within(self, x: float, y: float, r: float) -> List[int]:
		r2 = r * r
		x0, y0 = self._key(x - r, y - r)
		x1, y1 = self._key(x + r, y + r)
		found: List[int] = []
		for gx in range(x0, x1 + 1):
			for gy in range(y0, y1 + 1):
				for i in self._grid.get((gx, gy), ()):
					node = self.nodes[i]
					dx = node.x - x
					dy = node.y - y
					if dx * dx + dy * dy <= r2:
						found.append(i)
		found.sort()
		return found

	def range(self, min_x: float, min_y: float, max_x: float, max_y: float) -> List[int]:
		return [
			i
			for i, node in enumerate(self.nodes)
			if min_x <= node.x <= max_x and min_y <= node.y <= max_y
		]


@dataclass
class ClusterIndex:
	radius: float = 60.0
	extent: float = 512.0
	min_zoom: int = 0
	max_zoom: int = MAX_ZOOM
	min_points: int = 2
	_pins: List[Pin] = field(default_factory=list, init=False, repr=False)
	_levels: Dict[int, _Level] = field(default_factory=dict, init=False, repr=False)

	def _radius_at(self, zoom: int) -> float:
		return self.radius / (self.extent * math.pow(2, zoom))

	def load(self, pins: Sequence[Pin]) -> "ClusterIndex":
		self._pins = list(pins)
		self._levels = {}
		nodes = [_Node(x=lng_x(p.lon), y=lat_y(p.lat), index=i) for i, p in enumerate(self._pins)]
		self._levels[self.max_zoom + 1] = _Level(nodes, self._radius_at(self.max_zoom))
		for zoom in range(self.max_zoom, self.min_zoom - 1, -1):
			nodes = self._cluster(self._levels[zoom + 1], zoom)
			self._levels[zoom] = _Level(nodes, self._radius_at(zoom - 1))
		return self

	def _cluster(self, level: _Level, zoom: int) -> List[_Node]:
		r = self._radius_at(zoom)
		out: List[_Node] = []
		nodes = level.nodes
		for i, node in enumerate(nodes):
			if node.zoom <= zoom:
				continue
			node.zoom = zoom
			neighbours = level.within(node.x, node.y, r)
			origin_points = node.num_points
			num_points = origin_points
			for j in neighbours:
				other = nodes[j]
				if other.zoom > zoom:
					num_points += other.num_points
			if num_points > origin_points and num_points >= self.min_points:
				wx = node.x * origin_points
				wy = node.y * origin_points
				cluster_id = (i << 5) + (zoom + 1) + len(self._pins)
				for j in neighbours:
					other = nodes[j]
					if other.zoom <= zoom:
						continue
					other.zoom = zoom
					wx += other.x * other.num_points
					wy += other.y * other.num_points
					other.parent_id = cluster_id
				node.parent_id = cluster_id
				out.append(
					_Node(
						x=wx / num_points,
						y=wy / num_points,
						index=cluster_id,
						num_points=num_points,
						is_cluster=True,
					)
				)
			else:
				out.append(_copy(node))
				if num_points > 1:
					for j in neighbours:
						other = nodes[j]
						if other.zoom <= zoom:
							continue
						other.zoom = zoom
						out.append(_copy(other))
		return out

	def _limit_zoom(self, zoom: float) -> int:
		return max(self.min_zoom, min(math.floor(zoom), self.max_zoom + 1))

	def get_clusters(self, bbox: BBox, zoom: float) -> List[ClusterNode]:
		west, south, east, north = bbox
		min_lng = ((west + 180) % 360) - 180
		min_lat = max(-90.0, min(90.0, south))
		max_lng = 180.0 if east == 180 else ((east + 180) % 360) - 180
		max_lat = max(-90.0, min(90.0, north))
		if east - west >= 360:
			min_lng, max_lng = -180.0, 180.0
		elif min_lng > max_lng:
			eastern = self.get_clusters((min_lng, min_lat, 180.0, max_lat), zoom)
			western = self.get_clusters((-180.0, min_lat, max_lng, max_lat), zoom)
			return eastern + western
		level = self._levels.get(self._limit_zoom(zoom))
		if level is None:
			return []
		ids = level.range(lng_x(min_lng), lat_y(max_lat), lng_x(max_lng), lat_y(min_lat))
		return [self._to_output(level.nodes[i]) for i in ids]

	def _to_output(self, node: _Node) -> ClusterNode:
		if node.is_cluster:
			return ClusterNode(lat=y_lat(node.y), lon=x_lng(node.x), count=node.num_points, cluster_id=node.index)
		pin = self._pins[node.index]
		return ClusterNode(lat=pin.lat, lon=pin.lon, count=1, pin=pin)

	def _origin(self, cluster_id: int) -> Tuple[int, int]:
		offset = cluster_id - len(self._pins)
		return offset >> 5, offset % 32

	def _children_nodes(self, cluster_id: int) -> List[_Node]:
		origin_id, origin_zoom = self._origin(cluster_id)
		level = self._levels.get(origin_zoom)
		if level is None or not 0 <= origin_id < len(level.nodes):
			raise KeyError(f"no cluster with id {cluster_id}")
		origin = level.nodes[origin_id]
		r = self._radius_at(origin_zoom - 1)
		children = [
			level.nodes[i]
			for i in level.within(origin.x, origin.y, r)
			if level.nodes[i].parent_id == cluster_id
		]
		if not children:
			raise KeyError(f"no cluster with id {cluster_id}")
		return children

	def get_children(self, cluster_id: int) -> List[ClusterNode]:
		return [self._to_output(node) for node in self._children_nodes(cluster_id)]

	def get_leaves(self, cluster_id: int, limit: int = 10, offset: int = 0) -> List[Pin]:
		leaves: List[Pin] = []
		self._append_leaves(leaves, cluster_id, limit, offset, 0)
		return leaves

	def _append_leaves(self, out: List[Pin], cluster_id: int, limit: int, offset: int, skipped: int) -> int:
		for child in self._children_nodes(cluster_id):
			if child.is_cluster:
				if skipped + child.num_points <= offset:
					skipped += child.num_points
				else:
					skipped = self._append_leaves(out, child.index, limit, offset, skipped)
			elif skipped < offset:
				skipped += 1
			else:
				out.append(self._pins[child.index])
			if len(out) == limit:
				break
		return skipped

	def get_cluster_expansion_zoom(self, cluster_id: int) -> int:
		expansion_zoom = self._origin(cluster_id)[1] - 1
		while expansion_zoom <= self.max_zoom:
			children = self._children_nodes(cluster_id)
			expansion_zoom += 1
			if len(children) != 1:
				break
			cluster_id = children[0].index
		return expansion_zoom


def _copy(node: _Node) -> _Node:
	return _Node(
		x=node.x,
		y=node.y,
		index=node.index,
		num_points=node.num_points,
		is_cluster=node.is_cluster,
	)


def cluster_viewport(pins: Sequence[Pin], viewport: Viewport, index: Optional[ClusterIndex] = None) -> Optional[List[ClusterNode]]:
	"""Cluster `pins` for `viewport`; None when the viewport is degenerate."""
	if viewport.is_degenerate():
		return None
	index = (index or ClusterIndex()).load(pins)
	return index.get_clusters(viewport.bbox, viewport.zoom)

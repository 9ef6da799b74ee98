"""Media pipeline orchestration against a GStreamer Daemon (gstd) endpoint.

The camera graph is a fixed DAG of gstd pipelines joined with interpipe
elements: every node publishes on ``<name>_sink`` and downstream nodes read
from it with an ``interpipesrc`` named ``<name>_src``. Creation is idempotent
(HTTP 409 from gstd means the node already exists); everything else fails
fast and leaves already-created nodes in place.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import aiohttp

from edgeplane.errors import PipelineConflictIgnored, PipelineFatal

log = logging.getLogger("pipelines")

CAMERA = "camera"
SNAPSHOT = "snapshot"
H264 = "h264"
HLS = "hls"
RTP = "rtp"
INFERENCE = "tflite_inference"
BOUNDING_BOXES = "bounding_boxes"
DATAFRAME = "df"

_H264_CAPS = "capsfilter caps=video/x-h264,level=(string)3,profile=(string)main"
_RTP_PAY = "rtph264pay config-interval=1 aggregate-mode=zero-latency pt=96"


@dataclass(frozen=True)
class PipelineNode:
    name: str
    description: str
    upstream: str | None = None


def sink_name(node: str) -> str:
    return f"{node}_sink"


def src_name(node: str) -> str:
    return f"{node}_src"


def _interpipesrc(node: str, listen_to: str, *, leaky: bool = False, accept_eos: bool = False) -> str:
    parts = [
        "interpipesrc",
        f"name={src_name(node)}",
        f"listen-to={sink_name(listen_to)}",
        "accept-events=false",
        f"accept-eos-event={'true' if accept_eos else 'false'}",
        "is-live=true",
        "allow-renegotiation=false",
    ]
    if leaky:
        parts.extend(["num-buffers=2", "leaky-type=2"])
    return " ".join(parts)


def _interpipesink(node: str) -> str:
    return f"interpipesink name={sink_name(node)} sync=false"


def _camera(camera: Mapping[str, Any]) -> PipelineNode:
    description = (
        f"libcamerasrc camera-name={camera['device_name']} "
        f"! capsfilter caps=video/x-raw,width=(int){camera['width']},"
        f"height=(int){camera['height']},framerate=(fraction){camera['framerate']}/1 "
        f"! {_interpipesink(CAMERA)}"
    )
    return PipelineNode(CAMERA, description)


def _snapshot(location: str) -> PipelineNode:
    description = (
        f"{_interpipesrc(SNAPSHOT, CAMERA, leaky=True)} "
        f"! v4l2jpegenc ! multifilesink max-files=2 location={location}"
    )
    return PipelineNode(SNAPSHOT, description, CAMERA)


def _h264(framerate: int) -> PipelineNode:
    description = (
        f"{_interpipesrc(H264, CAMERA)} "
        "! v4l2convert "
        f"! v4l2h264enc min-force-key-unit-interval={framerate} "
        "extra-controls=controls,repeat_sequence_header=1 "
        "! h264parse "
        f"! {_H264_CAPS} "
        f"! {_interpipesink(H264)}"
    )
    return PipelineNode(H264, description, CAMERA)


def _hls(hls: Mapping[str, Any]) -> PipelineNode:
    description = (
        f"{_interpipesrc(HLS, H264)} "
        "! hlssink2 playlist-length=8 max-files=10 target-duration=1 "
        f"location={hls['segments']} playlist-location={hls['playlist']} "
        f"playlist-root={hls['playlist_root']} send-keyframe-requests=false"
    )
    return PipelineNode(HLS, description, H264)


def _rtp(port: int) -> PipelineNode:
    description = f"{_interpipesrc(RTP, H264)} ! {_RTP_PAY} ! udpsink port={port}"
    return PipelineNode(RTP, description, H264)


def _inference(detection: Mapping[str, Any]) -> PipelineNode:
    description = (
        f"{_interpipesrc(INFERENCE, CAMERA, leaky=True)} "
        "! videoconvert ! videoscale "
        f"! capsfilter caps=video/x-raw,format=RGB,width={detection['tensor_width']},"
        f"height={detection['tensor_height']} "
        "! tensor_converter "
        "! tensor_transform mode=arithmetic option=typecast:uint8,add:0,div:1 "
        "! capsfilter caps=other/tensors,format=static "
        f"! tensor-filter framework=tensorflow2-lite model={detection['model_file']} "
        f"! {_interpipesink(INFERENCE)}"
    )
    return PipelineNode(INFERENCE, description, CAMERA)


def _bounding_boxes(
    detection: Mapping[str, Any], camera: Mapping[str, Any], port: int
) -> PipelineNode:
    description = (
        f"{_interpipesrc(BOUNDING_BOXES, INFERENCE)} "
        "! tensor_decoder mode=bounding_boxes option1=mobilenet-ssd-postprocess "
        f"option2={detection['label_file']} option3=0:1:2:3,{detection['nms_threshold']} "
        f"option4={camera['width']}:{camera['height']} "
        f"option5={detection['tensor_width']}:{detection['tensor_height']} "
        "! videoconvert "
        "! v4l2h264enc output-io-mode=mmap capture-io-mode=mmap "
        "extra-controls=controls,repeat_sequence_header=1 "
        "! h264parse "
        f"! {_H264_CAPS} "
        f"! {_RTP_PAY} "
        f"! udpsink port={port}"
    )
    return PipelineNode(BOUNDING_BOXES, description, INFERENCE)


def _dataframe(detection: Mapping[str, Any]) -> PipelineNode:
    threshold = float(detection["nms_threshold"]) / 100.0
    description = (
        f"{_interpipesrc(DATAFRAME, INFERENCE)} "
        "! tensor_decoder mode=custom-code option1=edgeplane_bb_dataframe_decoder "
        f"! dataframe_agg filter-threshold={threshold} output-type=json "
        f"! nats_sink nats-address={detection['nats_server_uri']}"
    )
    return PipelineNode(DATAFRAME, description, INFERENCE)


def pipeline_plan(video_stream: Mapping[str, Any]) -> list[PipelineNode]:
    """Ordered node list for the camera graph; upstreams always come first."""
    camera = video_stream["camera"]
    snapshot = video_stream.get("snapshot", {})
    hls = video_stream.get("hls", {})
    rtp = video_stream["rtp"]
    detection = video_stream["detection"]

    plan = [_camera(camera)]
    if snapshot.get("enabled"):
        plan.append(_snapshot(snapshot["path"]))
    plan.append(_h264(int(camera["framerate"])))
    if hls.get("enabled"):
        plan.append(_hls(hls))
    plan.append(_rtp(int(rtp["video_udp_port"])))
    plan.append(_inference(detection))
    plan.append(_bounding_boxes(detection, camera, int(rtp["overlay_udp_port"])))
    plan.append(_dataframe(detection))
    return plan


def recording_node_name(recording_id: str) -> str:
    return f"recording_{recording_id.replace('-', '')}"


def recording_node(recording_id: str, directory: Path | str, part_duration_sec: int) -> PipelineNode:
    name = recording_node_name(recording_id)
    max_size_ns = int(part_duration_sec) * 1_000_000_000
    description = (
        f"{_interpipesrc(name, H264, accept_eos=True)} "
        "! splitmuxsink muxer-factory=mp4mux "
        f"location={Path(directory) / 'part-%05d.mp4'} max-size-time={max_size_ns}"
    )
    return PipelineNode(name, description, H264)


class GstdClient:
    """Minimal async client for the gstd HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self, method: str, path: str, params: Mapping[str, str], *, node: str
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, params=params) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise PipelineFatal(f"{method} {path} failed: {exc}", node=node) from exc

        if status == 409:
            raise PipelineConflictIgnored(f"{node} already exists", node=node, status=status)
        if status >= 400:
            raise PipelineFatal(
                f"{method} {path} returned {status}: {text.strip()}", node=node, status=status
            )

        payload: Any = None
        if text.strip():
            try:
                payload = json.loads(text)
            except ValueError:
                payload = None
        if isinstance(payload, dict) and payload.get("code") not in (None, 0):
            raise PipelineFatal(
                f"{method} {path} gstd error {payload.get('code')}: {payload.get('description')}",
                node=node,
                status=status,
            )
        return payload

    async def create_pipeline(self, name: str, description: str) -> None:
        await self._request(
            "POST", "/pipelines", {"name": name, "description": description}, node=name
        )

    async def play(self, name: str) -> None:
        await self._request("PUT", f"/pipelines/{name}/state", {"name": "playing"}, node=name)

    async def send_eos(self, name: str) -> None:
        await self._request("POST", f"/pipelines/{name}/event", {"name": "eos"}, node=name)

    async def delete_pipeline(self, name: str) -> None:
        await self._request("DELETE", "/pipelines", {"name": name}, node=name)


class PipelineOrchestrator:
    def __init__(self, client: GstdClient) -> None:
        self.client = client

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "PipelineOrchestrator":
        gstd = cfg.get("gstd", {})
        base_url = f"http://{gstd.get('host', '127.0.0.1')}:{gstd.get('port', 5000)}"
        return cls(GstdClient(base_url, timeout=float(gstd.get("timeout_sec", 10.0))))

    async def close(self) -> None:
        await self.client.close()

    async def provision(
        self, name: str, description: str, upstream: str | None = None
    ) -> PipelineNode:
        log.info("Creating %s pipeline with description: %s", name, description)
        try:
            await self.client.create_pipeline(name, description)
        except PipelineConflictIgnored:
            log.warning("Pipeline with name=%s already exists", name)
        return PipelineNode(name, description, upstream)

    async def start_node(self, node: PipelineNode) -> PipelineNode:
        provisioned = await self.provision(node.name, node.description, node.upstream)
        await self.client.play(node.name)
        log.info("Pipeline %s playing", node.name)
        return provisioned

    async def start_all(self, video_stream: Mapping[str, Any]) -> list[PipelineNode]:
        started: list[PipelineNode] = []
        for node in pipeline_plan(video_stream):
            started.append(await self.start_node(node))
        return started

    async def start_recording(
        self, recording_id: str, directory: Path | str, part_duration_sec: int
    ) -> PipelineNode:
        return await self.start_node(recording_node(recording_id, directory, part_duration_sec))

    async def stop_node(self, name: str) -> None:
        log.info("Sending EOS to pipeline %s", name)
        await self.client.send_eos(name)

    async def delete_node(self, name: str) -> None:
        await self.client.delete_pipeline(name)

"""
Visualization utilities for SfM reconstructions using Plotly.
"""

from __future__ import annotations

import plotly.graph_objs as go
import numpy as np

from marker_sfm.sfm_inc.incremental_sfm import ReconstructionResult


def plot_reconstruction(result: ReconstructionResult) -> go.Figure:
    """
    Create a 3D Plotly visualization of a reconstruction result.

    Args:
        result: Output of run_incremental_sfm. The global transform is applied
            to both points and camera centers.

    Returns:
        Plotly Figure with named 3D points and camera centers.
    """
    transform = result.global_transform
    points_xyz = result.point_array()
    point_names = result.reconstruction.point_names

    cameras = result.reconstruction.cameras
    if cameras:
        camera_centers = transform.apply(np.stack([cam.center for cam in cameras]))
    else:
        camera_centers = np.zeros((0, 3))

    fig = go.Figure()

    if len(points_xyz) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=points_xyz[:, 0],
                y=points_xyz[:, 1],
                z=points_xyz[:, 2],
                mode="markers+text",
                marker=dict(size=3, color="royalblue", opacity=0.8),
                name="3D Points",
                text=point_names,
                textposition="top center",
            )
        )

    if len(camera_centers) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=camera_centers[:, 0],
                y=camera_centers[:, 1],
                z=camera_centers[:, 2],
                mode="markers",
                marker=dict(
                    size=8,
                    color="red",
                    symbol="diamond",
                ),
                name="Camera Centers",
                text=[cam.image_id for cam in cameras],
            )
        )

    # Optical axis of each camera, scaled to a fraction of the scene extent.
    if len(camera_centers) > 0:
        extent = np.ptp(np.vstack([points_xyz, camera_centers]), axis=0).max()
        axis_len = 0.1 * extent if extent > 0 else 1.0
        xs, ys, zs = [], [], []
        for cam, center in zip(cameras, camera_centers):
            tip = transform.apply(cam.center + axis_len * cam.R[2])[0]
            xs += [center[0], tip[0], None]
            ys += [center[1], tip[1], None]
            zs += [center[2], tip[2], None]
        fig.add_trace(
            go.Scatter3d(
                x=xs,
                y=ys,
                z=zs,
                mode="lines",
                line=dict(color="red", width=3),
                name="Viewing Directions",
                hoverinfo="skip",
            )
        )

    fig.update_layout(
        title="SfM 3D Reconstruction",
        scene=dict(
            xaxis_title="X",
            yaxis_title="Y",
            zaxis_title="Z",
            aspectmode="data",
        ),
        width=800,
        height=600,
    )

    return fig


__all__ = ["plot_reconstruction"]

#!/usr/bin/env python3
"""
Bench check for the oven's Device Link
Connects, handshakes and regulates toward a fixed temperature for a short time
"""

import sys
import time

from device_link import SIMULATOR_PORT, DeviceError, available_ports, open_link
from reflow_controller import IntensityRegulator


def check_link(link, port, target_temp, duration, regulator=None, interval=1.0,
               sleep=time.sleep, out=print):
    """
    Drive a Device Link toward target_temp for duration seconds.

    The heater is always commanded to 0% and the link closed before returning,
    also when a device call fails.

    Returns:
        List of (elapsed, temperature, intensity) tuples
    """
    regulator = regulator or IntensityRegulator(4.0, 20.0)
    readings = []

    link.connect(port)
    out(f"✓ Link opened on {port}")
    try:
        link.handshake()
        out("✓ Handshake done")

        out("Time  | Current | Target | Output | Status")
        out("-" * 50)
        elapsed = 0.0
        while elapsed < duration:
            current_temp, _ = link.read_temperature()
            intensity = regulator(target_temp, current_temp, interval)
            link.send_command(intensity)
            readings.append((elapsed, current_temp, intensity))

            temp_diff = target_temp - current_temp
            if temp_diff > 10:
                status = "Heating..."
            elif temp_diff > 2:
                status = "Approaching target"
            else:
                status = "At target!"
            out(f"{int(elapsed):4d}s | {current_temp:6.1f}°C | {target_temp:6.1f}°C | "
                f"{intensity:5.1f}% | {status}")

            sleep(interval)
            elapsed += interval

        out("-" * 50)
        out("Check complete!")
    finally:
        try:
            link.send_command(0.0)
            out("✓ Heater commanded to 0%")
        except DeviceError as e:
            out(f"✗ Could not turn heater off: {e}")
        link.disconnect()
        out("✓ Link closed")

    return readings


def main():
    print("=" * 50)
    print("Reflow Oven Link Check")
    print("=" * 50)
    print("\n⚠️  WARNING: This will turn on your oven's heater!\n")

    ports = available_ports()
    print(f"Ports: {', '.join(ports)}")
    port = input(f"Port (default {SIMULATOR_PORT}): ").strip() or SIMULATOR_PORT

    duration = input("Check duration in seconds (default 30): ").strip()
    duration = int(duration) if duration else 30

    target_temp = input("Target temperature in °C (default 60): ").strip()
    target_temp = float(target_temp) if target_temp else 60.0

    input("Press Enter to start...")

    try:
        check_link(open_link(port), port, target_temp, duration)
    except KeyboardInterrupt:
        print("\n\nCheck interrupted by user")
    except DeviceError as e:
        print(f"\nERROR: {type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

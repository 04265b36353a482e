import json
import os

from flask import Flask, jsonify

app = Flask(__name__)

CONFIG_FILE = os.getenv("SYSTEM_CONFIG_PATH", "system_config.json")


def read_config():
    with open(app.config.get("CONFIG_FILE", CONFIG_FILE), "r") as f:
        return json.load(f)


@app.route("/config/stages", methods=["GET"])
def get_stages():
    data = read_config()
    return jsonify(data.get("stages", []))


@app.route("/config/stages/<stage_id>", methods=["GET"])
def get_stage(stage_id):
    for stage in read_config().get("stages", []):
        if stage.get("id") == stage_id:
            return jsonify(stage)
    return jsonify({"error": f"Unknown stage: {stage_id}"}), 404


@app.route("/config/hard_limits", methods=["GET"])
def get_hard_limits():
    data = read_config()
    return jsonify(data.get("hard_limits", {}))


@app.route("/config/cooldowns", methods=["GET"])
def get_cooldowns():
    defaults = read_config().get("defaults", {})
    return jsonify({k: v for k, v in defaults.items() if k.endswith("cooldown_ms") or k == "cooldowns_ms"})


@app.route("/config/all", methods=["GET"])
def get_all():
    return jsonify(read_config())


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000)
